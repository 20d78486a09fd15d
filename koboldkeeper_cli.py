#!/usr/bin/env python3
# KoboldKeeper - KoboldCpp backend manager (CLI)

import os
import sys
import logging
import argparse
from typing import List, Optional

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.progress import Progress, TextColumn, BarColumn, DownloadColumn, TransferSpeedColumn, TimeRemainingColumn

import koboldkeeper_core
from koboldkeeper_core import format_bytes, setup_logging
from koboldkeeper_assets import describe_asset, is_asset_recommended
from koboldkeeper_manager import BackendManager
from koboldkeeper_process import run_passthrough

logger = logging.getLogger(__name__)

console = Console()
def print_title(text): console.print(Panel(text, style="bold blue", expand=False, title_align="left"))
def print_success(text): console.print(f"[bold green]✓[/bold green] {text}")
def print_error(text): console.print(f"[bold red]✗[/bold red] {text}")
def print_warning(text): console.print(f"[bold yellow]![/bold yellow] {text}")
def print_info(text): console.print(f"[cyan]ℹ[/cyan] {text}")


def cmd_detect(manager: BackendManager, args) -> int:
    print_title("Hardware")
    cpu = manager.detector.detect_cpu()
    cpu_name = ", ".join(cpu.devices) or "Unknown CPU"
    print_info(f"CPU: {cpu_name} (AVX: {'yes' if cpu.avx else 'no'}, AVX2: {'yes' if cpu.avx2 else 'no'}, "
               f"{cpu.physical_cores or '?'} cores / {cpu.logical_cores or '?'} threads)")

    table = Table(title="GPU runtimes")
    table.add_column("Runtime", style="cyan")
    table.add_column("Supported", justify="center")
    table.add_column("Devices", style="magenta", overflow="fold")
    for name, probe in manager.detector.detect_gpu_capabilities().items():
        table.add_row(name.upper() if name != "clblast" else "CLBlast",
                      "[green]yes[/green]" if probe.supported else "[dim]no[/dim]",
                      ", ".join(probe.devices) or "-")
    console.print(table)

    for gpu in manager.detector.detect_gpu_memory():
        total = f"{gpu.total_gb:.1f} GB total" if gpu.total_gb is not None else "total unknown"
        free = f"{gpu.free_gb:.1f} GB free" if gpu.free_gb is not None else "free unknown"
        print_info(f"{gpu.device_name}: {total}, {free}")

    options = manager.available_backends(include_disabled=True)
    if options:
        console.print("Backends offered by the current binary: " + ", ".join(
            f"[dim]{o.label} (no device)[/dim]" if o.disabled else o.label for o in options))
    return 0


def cmd_releases(manager: BackendManager, args) -> int:
    result = manager.available_assets(force=args.refresh)
    if result.is_err():
        print_error(result.error.message)
        return 1
    has_amd = manager.detector.has_amd_gpu()
    table = Table(title="Available KoboldCpp downloads")
    table.add_column("Name", style="cyan", overflow="fold")
    table.add_column("Version", style="yellow")
    table.add_column("Size", justify="right")
    table.add_column("Notes", overflow="fold")
    for asset in result.value:
        name = f"[bold]{asset.name}[/bold] ★" if is_asset_recommended(asset.name, has_amd) else asset.name
        table.add_row(name, asset.version, format_bytes(asset.size), describe_asset(asset.name))
    console.print(table)
    return 0


def _install_with_progress(manager: BackendManager, asset, is_update: bool) -> int:
    with Progress(TextColumn("[bold blue]{task.description}"), BarColumn(), DownloadColumn(),
                  TransferSpeedColumn(), TimeRemainingColumn(), console=console) as progress:
        task_id = progress.add_task(asset.name, total=asset.size or None)

        def on_progress(event):
            progress.update(task_id, completed=event.payload["downloaded_bytes"],
                            total=event.payload["total_bytes"] or None)

        def on_state(event):
            if event.payload["state"] == "unpacking":
                progress.update(task_id, description=f"Unpacking {asset.name}")

        unsubscribers = [manager.events.subscribe("download.progress", on_progress),
                         manager.events.subscribe("download.state", on_state)]
        try:
            result = manager.install(asset, is_update=is_update)
        finally:
            for unsubscribe in unsubscribers:
                unsubscribe()
    if result.is_err():
        print_error(result.error.message)
        return 1
    backend = result.value
    print_success(f"Installed {backend.display_name} {backend.version} at {backend.path}")
    if backend.is_current:
        print_info("This backend is now the current backend.")
    return 0


def cmd_install(manager: BackendManager, args) -> int:
    result = manager.find_asset(args.asset)
    if result.is_err():
        print_error(result.error.message)
        return 1
    return _install_with_progress(manager, result.value, args.update)


def _backend_table(backends) -> Table:
    table = Table(title="Installed backends")
    table.add_column("", width=1)
    table.add_column("Name", style="cyan")
    table.add_column("Version", style="yellow")
    table.add_column("Path", style="dim", overflow="fold")
    for backend in backends:
        table.add_row("*" if backend.is_current else "", backend.display_name, backend.version, backend.path)
    return table


def cmd_list(manager: BackendManager, args) -> int:
    manager.current_backend()
    backends = manager.list_backends()
    if not backends:
        print_info(f"No backends installed in {manager.installs.install_dir}.")
        return 0
    console.print(_backend_table(backends))
    return 0


def _resolve_backend_path(manager: BackendManager, name_or_path: str) -> Optional[str]:
    for backend in manager.list_backends():
        if name_or_path in (backend.display_name, backend.path, backend.directory):
            return backend.path
    return None


def cmd_use(manager: BackendManager, args) -> int:
    path = _resolve_backend_path(manager, args.backend)
    if path is None:
        print_error(f"No installed backend matches '{args.backend}'.")
        return 1
    result = manager.installs.make_current(path)
    if result.is_err():
        print_error(result.error.message)
        return 1
    print_success(f"Current backend: {result.value.display_name}")
    return 0


def cmd_remove(manager: BackendManager, args) -> int:
    path = _resolve_backend_path(manager, args.backend)
    if path is None:
        print_error(f"No installed backend matches '{args.backend}'.")
        return 1
    result = manager.installs.delete_backend(path)
    if result.is_err():
        print_error(result.error.message)
        return 1
    print_success(f"Removed {result.value.display_name}")
    return 0


def cmd_check_updates(manager: BackendManager, args) -> int:
    info = manager.updates.check_now(force_feed=True)
    if info is None:
        print_info("The current backend is up to date.")
        return 0
    print_warning(f"Update available: {info.latest_asset.name} {info.current_version} -> {info.latest_asset.version}")
    if args.dismiss:
        manager.updates.dismiss(info)
        print_info(f"Version {info.latest_asset.version} will not be offered again for this backend.")
        return 0
    if args.apply:
        return _install_with_progress(manager, info.latest_asset, is_update=True)
    return 0


def cmd_plan(manager: BackendManager, args) -> int:
    acceleration = args.acceleration
    if acceleration is None:
        enabled = [o for o in manager.available_backends() if not o.disabled]
        acceleration = enabled[0].value if enabled else None
    result = manager.plan_gpu_layers(args.model, args.context, flash_attention=args.flash_attention,
                                     acceleration=acceleration, available_vram_gb=args.vram)
    if result.is_err():
        print_error(result.error.message)
        return 1
    plan = result.value
    print_title(f"GPU layers for {os.path.basename(args.model)}")
    print_success(f"Recommended: {plan.recommended_layers} of {plan.total_layers} layers "
                  f"({acceleration or 'default'} profile)")
    print_info(f"Estimated VRAM: {plan.estimated_vram_usage_gb:.2f} GB "
               f"(model {plan.model_vram_gb:.2f} GB + context {plan.context_vram_gb:.2f} GB, "
               f"{plan.compute_buffer_gb + plan.headroom_gb:.2f} GB reserved)")
    return 0


def cmd_analyze(manager: BackendManager, args) -> int:
    result = manager.analyze_model(args.model)
    if result.is_err():
        print_error(result.error.message)
        return 1
    analysis = result.value
    table = Table(title=analysis.get("name") or os.path.basename(args.model), show_header=False)
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    rows = [("Architecture", analysis["architecture"]), ("Parameters", analysis["parameter_count"]),
            ("Layers", analysis["layers"]), ("Context length", analysis["context_length"]),
            ("Experts", analysis["expert_count"]), ("File size", analysis["file_size_display"]),
            ("VRAM (full offload)", analysis["full_gpu_vram"]), ("System RAM", analysis["system_ram"]),
            ("VRAM per layer", analysis["vram_per_layer"])]
    for label, value in rows:
        if value is not None:
            table.add_row(label, str(value))
    console.print(table)
    return 0


def cmd_launch(manager: BackendManager, args) -> int:
    result = manager.launch(args.kcpp_args)
    if result.is_err():
        print_error(result.error.message)
        return 1
    handle = result.value
    print_info(f"KoboldCpp started (PID {handle.pid}). Press Ctrl+C to stop.")
    def on_output(event):
        console.out(event.payload["text"], end="", highlight=False)

    def on_ready(event):
        print_success(f"KoboldCpp is ready at {event.payload['url']}")

    def on_crash(event):
        print_error(f"KoboldCpp crashed: {event.payload['crash'].message}")

    manager.events.subscribe("process.output", on_output, source_id=handle.handle_id)
    manager.events.subscribe("process.ready", on_ready, source_id=handle.handle_id)
    manager.events.subscribe("process.crashed", on_crash, source_id=handle.handle_id)
    try:
        exit_code = manager.supervisor.wait(handle.handle_id)
    except KeyboardInterrupt:
        print_warning("\nStopping KoboldCpp...")
        manager.supervisor.terminate(handle.handle_id)
        exit_code = manager.supervisor.wait(handle.handle_id, timeout=5)
    return exit_code or 0


def cmd_run(manager: BackendManager, args) -> int:
    current = manager.current_backend()
    if current is None:
        print_error("No KoboldCpp backend is installed. Install one first.")
        return 1
    return run_passthrough(current.path, args.kcpp_args)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="koboldkeeper", description="Install, update and run KoboldCpp backends.")
    parser.add_argument("--config", help="Path to the launcher config file")
    parser.add_argument("--install-dir", help="Directory backends are installed into")
    parser.add_argument("--log-level", help="Logging level (DEBUG, INFO, WARNING, ERROR)")
    parser.add_argument("--version", action="version", version=f"%(prog)s {koboldkeeper_core.CORE_VERSION}")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("detect", help="Show detected CPU and GPU capabilities").set_defaults(func=cmd_detect)

    p_releases = sub.add_parser("releases", help="List downloads in the latest KoboldCpp release")
    p_releases.add_argument("--refresh", action="store_true", help="Ignore the cached release")
    p_releases.set_defaults(func=cmd_releases)

    p_install = sub.add_parser("install", help="Download and install a backend")
    p_install.add_argument("asset", help="Asset name as shown by 'releases'")
    p_install.add_argument("--update", action="store_true", help="Replace an existing installation")
    p_install.set_defaults(func=cmd_install)

    sub.add_parser("list", help="List installed backends").set_defaults(func=cmd_list)

    p_use = sub.add_parser("use", help="Make an installed backend current")
    p_use.add_argument("backend", help="Backend name or path")
    p_use.set_defaults(func=cmd_use)

    p_remove = sub.add_parser("remove", help="Delete an installed backend")
    p_remove.add_argument("backend", help="Backend name or path")
    p_remove.set_defaults(func=cmd_remove)

    p_updates = sub.add_parser("check-updates", help="Check the current backend for a newer release")
    group = p_updates.add_mutually_exclusive_group()
    group.add_argument("--apply", action="store_true", help="Install the update")
    group.add_argument("--dismiss", action="store_true", help="Skip this version")
    p_updates.set_defaults(func=cmd_check_updates)

    p_plan = sub.add_parser("plan", help="Recommend a GPU layer count for a model")
    p_plan.add_argument("model", help="Path or URL of a GGUF model")
    p_plan.add_argument("--context", type=int, default=4096, help="Context size in tokens")
    p_plan.add_argument("--vram", type=float, help="Available VRAM in GB (detected when omitted)")
    p_plan.add_argument("--flash-attention", action="store_true")
    p_plan.add_argument("--acceleration", choices=["cuda", "rocm", "vulkan", "clblast", "cpu", "metal"])
    p_plan.set_defaults(func=cmd_plan)

    p_analyze = sub.add_parser("analyze", help="Summarize a local GGUF model")
    p_analyze.add_argument("model")
    p_analyze.set_defaults(func=cmd_analyze)

    p_launch = sub.add_parser("launch", help="Launch the current backend and follow its output")
    p_launch.add_argument("kcpp_args", nargs=argparse.REMAINDER, help="Arguments passed to KoboldCpp")
    p_launch.set_defaults(func=cmd_launch)

    p_run = sub.add_parser("run", help="Run the current backend attached to this terminal")
    p_run.add_argument("kcpp_args", nargs=argparse.REMAINDER, help="Arguments passed to KoboldCpp")
    p_run.set_defaults(func=cmd_run)
    return parser


def main_cli(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    config, _, config_message = koboldkeeper_core.load_config(args.config)
    setup_logging(args.log_level or config.get("log_level", "INFO"), console=console)
    logger.debug(config_message)

    manager = BackendManager(config=config, config_file=args.config, install_dir=args.install_dir)
    try:
        return args.func(manager, args)
    except KeyboardInterrupt:
        print_warning("\nInterrupted by user (Ctrl+C).")
        return 130
    finally:
        manager.shutdown()


def main():
    sys.exit(main_cli())


if __name__ == "__main__":
    main()
