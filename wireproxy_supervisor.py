"""Lifecycle of the single wireproxy process: spawn, stability window, exit watch, stop."""

import logging
import os
import signal
import subprocess
import threading
from enum import Enum
from typing import Callable, NamedTuple, Optional

from wireproxy_config import PROXY_PORT
from wireproxy_proxy import proxy_url

log = logging.getLogger(__name__)

STABILITY_WINDOW = 1.0  # seconds a fresh process must survive to count as connected
CONFIG_FLAG      = '-c'


# ── Outcomes ──────────────────────────────────────────────────────────────────
class Outcome(Enum):
    STABLE           = 'stable'
    CLEAN_EXIT       = 'clean exit'
    CRASH_EXIT       = 'crash exit'
    SPAWN_ERROR      = 'spawn error'
    BINARY_NOT_FOUND = 'binary not found'
    INTENTIONAL_STOP = 'intentional stop'

    @property
    def is_failure(self) -> bool:
        return self in (Outcome.CLEAN_EXIT, Outcome.CRASH_EXIT,
                        Outcome.SPAWN_ERROR, Outcome.BINARY_NOT_FOUND)


class SupervisorEvent(NamedTuple):
    outcome: Outcome
    profile: str = ''
    is_new_config: bool = False
    code: Optional[int] = None
    signal: Optional[int] = None
    cause: Optional[BaseException] = None


def _signal_name(signum: int) -> str:
    try:
        return signal.Signals(signum).name
    except ValueError:
        return f'signal {signum}'


def describe_failure(event: SupervisorEvent) -> str:
    """User-facing message for a failure outcome."""
    if event.outcome == Outcome.BINARY_NOT_FOUND:
        return 'WireProxy is not installed. Please install wireproxy and add it to your PATH.'
    if event.outcome == Outcome.SPAWN_ERROR:
        return f'WireProxy failed to start ({event.cause}). Possibly invalid configuration file.'
    if event.outcome == Outcome.CRASH_EXIT:
        reason = _signal_name(event.signal) if event.signal is not None else event.code
        return f'WireProxy exited with code {reason}. Possibly invalid configuration file.'
    if event.outcome == Outcome.CLEAN_EXIT:
        return 'WireProxy exited unexpectedly.'
    return f'WireProxy: {event.outcome.value}'


# ── Child output ──────────────────────────────────────────────────────────────
def _read_pipe(pipe, process_name: str, level: int):
    proc_logger = logging.getLogger(f'proc.{process_name}')
    try:
        for line_bytes in iter(pipe.readline, b''):
            line = line_bytes.decode('utf-8', errors='replace').strip()
            if line:
                proc_logger.log(level, line)
    except (OSError, ValueError) as exc:
        proc_logger.debug('Pipe reader for %s exited: %s', process_name, exc)
    finally:
        pipe.close()


def log_process_output(process: subprocess.Popen, name: str):
    """Drain a child's stdout/stderr into the proc.<name> logger."""
    if process.stdout:
        threading.Thread(target=_read_pipe, args=(process.stdout, name, logging.INFO),
                         daemon=True).start()
    if process.stderr:
        threading.Thread(target=_read_pipe, args=(process.stderr, name, logging.ERROR),
                         daemon=True).start()


# ── Launcher (OS + main loop seam) ────────────────────────────────────────────
class PopenLauncher:
    """
    Spawns real processes and reports back on the GLib main loop.

    Each watched process gets a daemon thread blocked in ``wait()``; its result
    is handed to the main loop with ``idle_add`` so supervisor state is only
    ever touched from one thread.
    """

    def __init__(self, loop=None):
        if loop is None:
            from gi.repository import GLib
            loop = GLib
        self._loop = loop

    def spawn(self, argv: list[str]) -> subprocess.Popen:
        proc = subprocess.Popen(argv, stdin=subprocess.DEVNULL,
                                stdout=subprocess.PIPE, stderr=subprocess.PIPE)
        log_process_output(proc, os.path.basename(argv[0]))
        return proc

    def watch(self, proc: subprocess.Popen,
              on_exit: Callable[[int], None],
              on_error: Callable[[OSError], None]):
        def _deliver(callback, value):
            callback(value)
            return False  # one-shot idle source

        def _worker():
            try:
                returncode = proc.wait()
            except OSError as exc:
                self._loop.idle_add(_deliver, on_error, exc)
            else:
                self._loop.idle_add(_deliver, on_exit, returncode)

        threading.Thread(target=_worker, name=f'wait-{proc.pid}', daemon=True).start()

    def timeout(self, seconds: float, callback: Callable[[], None]):
        def _fire():
            callback()
            return False
        self._loop.timeout_add(int(seconds * 1000), _fire)


# ── Supervisor ────────────────────────────────────────────────────────────────
def _run_all(callbacks: list[Callable[[], None]], what: str):
    """Run every callback; log failures and re-raise the first once all have run."""
    first_error = None
    for callback in callbacks:
        try:
            callback()
        except Exception as exc:
            log.exception('%s failed', what)
            if first_error is None:
                first_error = exc
    if first_error is not None:
        raise first_error


class _Handle:
    def __init__(self, proc, profile: str, is_new_config: bool):
        self.proc          = proc
        self.pid           = proc.pid
        self.profile       = profile
        self.is_new_config = is_new_config
        self.stopping      = False
        self.confirmed     = False
        self.exited        = False

    @property
    def reports_new_config(self) -> bool:
        # Once the stability window passed the config has proven itself.
        return self.is_new_config and not self.confirmed


class ProcessSupervisor:
    def __init__(self, proxy_setting, binary: str = 'wireproxy',
                 port: int = PROXY_PORT, launcher=None,
                 stability_window: float = STABILITY_WINDOW):
        self.binary = binary
        self.port = port
        self.stability_window = stability_window
        self._proxy = proxy_setting
        self._launcher = launcher if launcher is not None else PopenLauncher()
        self._handle: Optional[_Handle] = None
        self._pending_start = None
        self._stop_waiters: list[Callable[[], None]] = []
        self._listeners: list[Callable[[SupervisorEvent], None]] = []

    def subscribe(self, callback: Callable[[SupervisorEvent], None]):
        self._listeners.append(callback)

    @property
    def is_running(self) -> bool:
        return self._handle is not None

    @property
    def pid(self) -> Optional[int]:
        return self._handle.pid if self._handle else None

    def _emit(self, event: SupervisorEvent):
        log_fn = log.error if event.outcome.is_failure else log.info
        log_fn('wireproxy %s (profile=%s code=%s signal=%s cause=%s)',
               event.outcome.value, event.profile or '-',
               event.code, event.signal, event.cause)
        _run_all([lambda cb=cb: cb(event) for cb in self._listeners],
                 f'{event.outcome.value} listener')

    # ── start ─────────────────────────────────────────────────────────────────

    def start(self, config_path: str, profile: str, is_new_config: bool = False):
        """Stop whatever runs, then spawn wireproxy for ``config_path``."""
        request = (config_path, profile, is_new_config)
        self._pending_start = request
        self._stop(lambda: self._launch(request))

    def _launch(self, request):
        if request is not self._pending_start:
            log.debug('Start of %s superseded by a later start', request[1])
            return
        if self._handle is not None:
            self._stop(lambda: self._launch(request))
            return
        self._pending_start = None
        config_path, profile, is_new_config = request

        self._proxy.set(proxy_url(self.port))
        argv = [self.binary, CONFIG_FLAG, config_path]
        log.info('Starting %s', ' '.join(argv))
        try:
            proc = self._launcher.spawn(argv)
        except FileNotFoundError as exc:
            self._proxy.clear()
            self._emit(SupervisorEvent(Outcome.BINARY_NOT_FOUND, profile, is_new_config, cause=exc))
            return
        except OSError as exc:
            self._proxy.clear()
            self._emit(SupervisorEvent(Outcome.SPAWN_ERROR, profile, is_new_config, cause=exc))
            return

        handle = _Handle(proc, profile, is_new_config)
        self._handle = handle
        log.info('wireproxy started with PID %s', handle.pid)
        self._launcher.watch(proc,
                             lambda returncode: self._on_exit(handle, returncode),
                             lambda exc: self._on_error(handle, exc))
        self._launcher.timeout(self.stability_window,
                               lambda: self._on_stability_window(handle))

    def _on_stability_window(self, handle: _Handle):
        if handle.exited or handle.stopping or handle is not self._handle:
            return
        handle.confirmed = True
        self._emit(SupervisorEvent(Outcome.STABLE, handle.profile, handle.is_new_config))

    # ── observers ─────────────────────────────────────────────────────────────

    def _finish(self, handle: _Handle, event: SupervisorEvent):
        handle.exited = True
        if self._handle is handle:
            self._handle = None
        self._proxy.clear()
        waiters, self._stop_waiters = self._stop_waiters, []
        try:
            self._emit(event)
        finally:
            # The exit is confirmed whatever a listener did; every waiter runs.
            _run_all(waiters, 'stop callback')

    def _on_exit(self, handle: _Handle, returncode: int):
        if handle.exited:
            return
        new_config = handle.reports_new_config
        if handle.stopping:
            event = SupervisorEvent(Outcome.INTENTIONAL_STOP, handle.profile, new_config,
                                    code=returncode if returncode >= 0 else None,
                                    signal=-returncode if returncode < 0 else None)
        elif returncode == 0:
            event = SupervisorEvent(Outcome.CLEAN_EXIT, handle.profile, new_config, code=0)
        elif returncode < 0:
            event = SupervisorEvent(Outcome.CRASH_EXIT, handle.profile, new_config, signal=-returncode)
        else:
            event = SupervisorEvent(Outcome.CRASH_EXIT, handle.profile, new_config, code=returncode)
        self._finish(handle, event)

    def _on_error(self, handle: _Handle, exc: OSError):
        if handle.exited:
            return
        outcome = Outcome.INTENTIONAL_STOP if handle.stopping else Outcome.SPAWN_ERROR
        self._finish(handle, SupervisorEvent(outcome, handle.profile,
                                             handle.reports_new_config, cause=exc))

    # ── stop ──────────────────────────────────────────────────────────────────

    def stop(self, on_stopped: Optional[Callable[[], None]] = None):
        """
        Terminate the running process.

        ``on_stopped`` runs once the exit has been observed, never merely after
        the signal was sent. There is no timeout: a process ignoring SIGTERM
        keeps every queued callback waiting. A start still waiting for the
        previous process to go away is dropped.
        """
        self._pending_start = None
        self._stop(on_stopped)

    def _stop(self, on_stopped: Optional[Callable[[], None]]):
        handle = self._handle
        if handle is None:
            if on_stopped is not None:
                on_stopped()
            return
        if on_stopped is not None:
            self._stop_waiters.append(on_stopped)
        if handle.stopping:
            return
        handle.stopping = True
        log.info('Stopping wireproxy (PID %s)', handle.pid)
        handle.proc.terminate()
