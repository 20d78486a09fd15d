import os
import re
import sys
import codecs
import signal
import logging
import threading
import subprocess
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Optional, List, Dict

import psutil

from koboldkeeper_core import (
    READY_MARKER, TERMINATE_TIMEOUT_MS, ProcessError, Result, EventBus, new_id,
)

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 65536
MAX_BUFFERED_LINES = 5000
WINDOWS_TASKKILL_SETTLE_S = 2.0
_READY_URL_RE = re.compile(re.escape(READY_MARKER) + r"\s+(\S+)")
_NEWLINE_RE = re.compile(r"(\r\n|\r|\n)")


class LineBuffer:
    """Reassembles a terminal stream into lines.

    A lone ``\\r`` rewinds the line in progress so the next text replaces it, the
    way progress bars redraw themselves. ``\\r\\n`` is an ordinary newline, even
    when the two characters arrive in different chunks.
    """

    def __init__(self, max_lines: int = MAX_BUFFERED_LINES):
        self._lines = deque(maxlen=max_lines)
        self._current = ""
        self._rewind = False
        self._lock = threading.Lock()

    def append(self, chunk: str):
        with self._lock:
            for index, part in enumerate(_NEWLINE_RE.split(chunk)):
                if index % 2 == 0:
                    if part:
                        if self._rewind:
                            self._current = ""
                            self._rewind = False
                        self._current += part
                elif part == "\r":
                    self._rewind = True
                else:
                    self._lines.append(self._current)
                    self._current = ""
                    self._rewind = False

    def render_lines(self) -> List[str]:
        with self._lock:
            lines = list(self._lines)
            if self._current:
                lines.append(self._current)
            return lines

    def text(self) -> str:
        return "\n".join(self.render_lines())

    def clear(self):
        with self._lock:
            self._lines.clear()
            self._current = ""
            self._rewind = False


class ProcessState(str, Enum):
    STARTING = "starting"
    RUNNING = "running"
    EXITED = "exited"
    KILLED = "killed"


@dataclass
class CrashInfo:
    exit_code: Optional[int]
    signal: Optional[int]
    message: str


class ChildProcessHandle:
    def __init__(self, handle_id: str, process: subprocess.Popen, binary_path: str, args: List[str]):
        self.handle_id = handle_id
        self.process = process
        self.pid = process.pid
        self.binary_path = binary_path
        self.args = list(args)
        self.state = ProcessState.STARTING
        self.exit_code: Optional[int] = None
        self.signal: Optional[int] = None
        self.ready_url: Optional[str] = None
        self.output = LineBuffer()
        self.stop_requested = False
        self.exited_event = threading.Event()
        self._reader: Optional[threading.Thread] = None
        self._waiter: Optional[threading.Thread] = None

    @property
    def alive(self) -> bool:
        return not self.exited_event.is_set()

    def __repr__(self):
        return f"<ChildProcessHandle {self.handle_id} pid={self.pid} state={self.state.value}>"


def exit_status_from_returncode(returncode: int):
    """Returns (exit_code, signal). Signal deaths map to 128 + signal number."""
    if returncode is not None and returncode < 0:
        signum = -returncode
        return 128 + signum, signum
    return returncode, None

def _signal_name(signum: Optional[int]) -> str:
    if signum is None:
        return ""
    try:
        return signal.Signals(signum).name
    except ValueError:
        return f"signal {signum}"


# --- Termination ---

class ProcessTerminator:
    """Graceful stop followed by a forced kill once ``timeout_ms`` runs out."""

    def request_stop(self, process: subprocess.Popen):
        raise NotImplementedError

    def force_kill(self, process: subprocess.Popen):
        raise NotImplementedError

    def terminate(self, process: subprocess.Popen, timeout_ms: int = TERMINATE_TIMEOUT_MS) -> Optional[int]:
        if process.poll() is not None:
            return process.returncode
        self.request_stop(process)
        try:
            return process.wait(timeout=timeout_ms / 1000.0)
        except subprocess.TimeoutExpired:
            logger.warning("Process %s did not exit within %dms, forcing kill", process.pid, timeout_ms)
        self.force_kill(process)
        try:
            return process.wait(timeout=timeout_ms / 1000.0)
        except subprocess.TimeoutExpired:
            logger.error("Process %s is still running after a forced kill", process.pid)
            return None


class PosixTerminator(ProcessTerminator):
    def request_stop(self, process):
        try:
            process.send_signal(signal.SIGTERM)
        except ProcessLookupError:
            pass

    def force_kill(self, process):
        try:
            process.kill()
        except ProcessLookupError:
            pass


class WindowsTerminator(ProcessTerminator):
    """taskkill /T /F already kills the whole tree, so escalation has nothing left to do."""

    def request_stop(self, process):
        args = ["taskkill", "/PID", str(process.pid), "/T", "/F"]
        startupinfo = subprocess.STARTUPINFO()
        startupinfo.dwFlags |= subprocess.STARTF_USESHOWWINDOW
        try:
            result = subprocess.run(args, startupinfo=startupinfo, capture_output=True, timeout=5,
                                    creationflags=subprocess.CREATE_NO_WINDOW)
        except (subprocess.TimeoutExpired, OSError) as e_kill:
            logger.warning("taskkill for PID %s failed: %s", process.pid, e_kill)
            return
        stderr = result.stderr.decode(errors='ignore').lower()
        if result.returncode not in (0, 128) and "could not find the process" not in stderr \
                and "no running instance" not in stderr:
            logger.warning("taskkill for PID %s returned %s: %s", process.pid, result.returncode, stderr.strip())
        try:
            process.wait(timeout=WINDOWS_TASKKILL_SETTLE_S)
        except subprocess.TimeoutExpired:
            pass

    def force_kill(self, process):
        pass


def select_terminator(platform_name: Optional[str] = None) -> ProcessTerminator:
    if (platform_name or sys.platform) == "win32":
        return WindowsTerminator()
    return PosixTerminator()


# --- psutil helpers ---

def processes_rooted_in(directory: str) -> List[psutil.Process]:
    """Running processes whose executable lives under ``directory``."""
    root = os.path.normcase(os.path.realpath(directory))
    own_pid = os.getpid()
    found = []
    for proc in psutil.process_iter(['pid', 'exe']):
        try:
            exe = proc.info.get('exe')
            if not exe or proc.info['pid'] == own_pid:
                continue
            exe_path = os.path.normcase(os.path.realpath(exe))
            if exe_path.startswith(root + os.sep):
                found.append(proc)
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
            continue
    return found

def stop_processes_rooted_in(directory: str, timeout_s: float = 2.0) -> List[psutil.Process]:
    """Terminates every process running from ``directory``; returns any that survived."""
    procs = processes_rooted_in(directory)
    if not procs:
        return []
    logger.info("Stopping %d process(es) running from %s", len(procs), directory)
    for proc in procs:
        try:
            proc.terminate()
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue
    _, alive = psutil.wait_procs(procs, timeout=timeout_s)
    for proc in alive:
        try:
            proc.kill()
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue
    _, alive = psutil.wait_procs(alive, timeout=timeout_s)
    return alive


# --- Supervisor ---

def _child_env() -> Dict[str, str]:
    env = dict(os.environ)
    env["PYTHONUNBUFFERED"] = "1"
    return env


class ProcessSupervisor:
    """Runs one foreground KoboldCpp process and reports its output and lifecycle.

    Events (all keyed by ``handle_id``): ``process.started``, ``process.output``,
    ``process.ready``, ``process.exited`` and ``process.crashed``.
    """

    def __init__(self, events: Optional[EventBus] = None, terminator: Optional[ProcessTerminator] = None,
                 ready_marker: str = READY_MARKER, terminate_timeout_ms: int = TERMINATE_TIMEOUT_MS):
        self.events = events or EventBus()
        self.terminator = terminator or select_terminator()
        self.ready_marker = ready_marker
        self.terminate_timeout_ms = terminate_timeout_ms
        self._lock = threading.RLock()
        self._handles: Dict[str, ChildProcessHandle] = {}
        self._foreground: Optional[ChildProcessHandle] = None

    def foreground(self) -> Optional[ChildProcessHandle]:
        return self._foreground

    def get(self, handle_id: str) -> Optional[ChildProcessHandle]:
        return self._handles.get(handle_id)

    def launch(self, binary_path: str, argv: List[str], cwd: Optional[str] = None) -> Result:
        if not binary_path:
            raise ValueError("binary_path is required")
        with self._lock:
            if self._foreground is not None and self._foreground.alive:
                logger.info("Stopping previous KoboldCpp process %s before launching", self._foreground.pid)
                self.terminate(self._foreground.handle_id)
            self._handles = {hid: h for hid, h in self._handles.items() if h.alive}

            kwargs = {"stdout": subprocess.PIPE, "stderr": subprocess.STDOUT, "stdin": subprocess.DEVNULL,
                      "bufsize": 0, "env": _child_env(),
                      "cwd": cwd or os.path.dirname(os.path.abspath(binary_path))}
            if sys.platform == "win32":
                kwargs["creationflags"] = subprocess.CREATE_NO_WINDOW
            command = [binary_path] + list(argv)
            try:
                process = subprocess.Popen(command, **kwargs)
            except FileNotFoundError:
                return Result.err(ProcessError(f"Executable '{binary_path}' not found. Reinstall the backend."))
            except PermissionError:
                return Result.err(ProcessError(f"Permission denied for '{binary_path}'. Check that it is executable."))
            except OSError as e_launch:
                return Result.err(ProcessError(f"Launch error: {type(e_launch).__name__}: {e_launch}"))

            handle = ChildProcessHandle(new_id(), process, binary_path, argv)
            self._handles[handle.handle_id] = handle
            self._foreground = handle
            logger.info("KoboldCpp process started (PID: %s)", process.pid)
            self.events.emit("process.started", handle.handle_id, pid=process.pid, command=command)

            handle._reader = threading.Thread(target=self._read_output, args=(handle,),
                                              name=f"kcpp-output-{process.pid}", daemon=True)
            handle._waiter = threading.Thread(target=self._wait_for_exit, args=(handle,),
                                              name=f"kcpp-waiter-{process.pid}", daemon=True)
            handle._reader.start()
            handle._waiter.start()
            return Result.ok(handle)

    def _read_output(self, handle: ChildProcessHandle):
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        window = ""
        stream = handle.process.stdout
        try:
            while True:
                data = stream.read(READ_CHUNK_SIZE)
                if not data:
                    break
                text = decoder.decode(data)
                if not text:
                    continue
                handle.output.append(text)
                self.events.emit("process.output", handle.handle_id, text=text)
                if handle.state == ProcessState.STARTING:
                    window = (window + text)[-4096:]
                    if self.ready_marker in window:
                        self._mark_ready(handle, window)
            tail = decoder.decode(b"", final=True)
            if tail:
                handle.output.append(tail)
                self.events.emit("process.output", handle.handle_id, text=tail)
        except (OSError, ValueError) as e_read:
            logger.debug("Output reader for PID %s stopped: %s", handle.pid, e_read)
        finally:
            try:
                stream.close()
            except OSError:
                pass

    def _mark_ready(self, handle: ChildProcessHandle, window: str):
        match = _READY_URL_RE.search(window)
        handle.ready_url = match.group(1) if match else None
        handle.state = ProcessState.RUNNING
        logger.info("KoboldCpp is ready%s", f" at {handle.ready_url}" if handle.ready_url else "")
        self.events.emit("process.ready", handle.handle_id, url=handle.ready_url)

    def _wait_for_exit(self, handle: ChildProcessHandle):
        returncode = handle.process.wait()
        if handle._reader is not None:
            handle._reader.join(timeout=2.0)
        exit_code, signum = exit_status_from_returncode(returncode)
        handle.exit_code = exit_code
        handle.signal = signum
        if handle.stop_requested:
            handle.state = ProcessState.KILLED
        else:
            handle.state = ProcessState.EXITED
        handle.exited_event.set()
        with self._lock:
            if self._foreground is handle:
                self._foreground = None

        self.events.emit("process.exited", handle.handle_id, exit_code=exit_code, signal=signum,
                         requested=handle.stop_requested)
        if not handle.stop_requested and (exit_code != 0 or signum is not None):
            if signum is not None:
                message = f"KoboldCpp was terminated by {_signal_name(signum)} (exit code {exit_code})."
            else:
                message = f"KoboldCpp exited unexpectedly with code {exit_code}."
            logger.error(message)
            self.events.emit("process.crashed", handle.handle_id,
                             crash=CrashInfo(exit_code=exit_code, signal=signum, message=message))
        else:
            logger.info("KoboldCpp process %s exited with code %s", handle.pid, exit_code)

    def terminate(self, handle_id: str, timeout_ms: Optional[int] = None) -> bool:
        """Stops the process behind ``handle_id``. Unknown or already exited handles are a no-op."""
        handle = self._handles.get(handle_id)
        if handle is None or not handle.alive or handle.process.poll() is not None:
            return False
        timeout_ms = self.terminate_timeout_ms if timeout_ms is None else timeout_ms
        handle.stop_requested = True
        logger.info("Stopping KoboldCpp process %s", handle.pid)
        self.terminator.terminate(handle.process, timeout_ms)
        handle.exited_event.wait(timeout=timeout_ms / 1000.0 + 2.0)
        return True

    def terminate_foreground(self, timeout_ms: Optional[int] = None) -> bool:
        handle = self._foreground
        if handle is None:
            return False
        return self.terminate(handle.handle_id, timeout_ms)

    def wait(self, handle_id: str, timeout: Optional[float] = None) -> Optional[int]:
        handle = self._handles.get(handle_id)
        if handle is None:
            return None
        handle.exited_event.wait(timeout)
        return handle.exit_code


# --- Command line pass-through ---

def run_passthrough(binary_path: str, argv: List[str], terminator: Optional[ProcessTerminator] = None,
                    output=None) -> int:
    """Runs KoboldCpp in the foreground of the terminal and returns its exit code.

    POSIX children inherit our standard streams. On Windows the output is piped and
    copied to ``output`` as it arrives, carriage returns included.
    """
    terminator = terminator or select_terminator()
    use_pipe = sys.platform == "win32"
    output = output or sys.stdout
    kwargs = {}
    if use_pipe:
        kwargs.update({"stdout": subprocess.PIPE, "stderr": subprocess.STDOUT, "bufsize": 0})
    try:
        process = subprocess.Popen([binary_path] + list(argv), **kwargs)
    except OSError as e_launch:
        raise ProcessError(f"Could not start '{binary_path}': {e_launch}") from e_launch

    previous_handlers = {}

    def forward(signum, frame):
        logger.debug("Forwarding %s to KoboldCpp", _signal_name(signum))
        threading.Thread(target=terminator.terminate, args=(process,), daemon=True).start()

    if threading.current_thread() is threading.main_thread():
        for signum in (signal.SIGINT, signal.SIGTERM):
            previous_handlers[signum] = signal.signal(signum, forward)
    try:
        if use_pipe:
            decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
            while True:
                data = process.stdout.read(READ_CHUNK_SIZE)
                if not data:
                    break
                output.write(decoder.decode(data))
                output.flush()
            output.write(decoder.decode(b"", final=True))
            output.flush()
        returncode = process.wait()
    finally:
        for signum, handler in previous_handlers.items():
            signal.signal(signum, handler)
    exit_code, _ = exit_status_from_returncode(returncode)
    return exit_code
