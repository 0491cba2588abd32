"""Shared fakes: a scripted launcher, a recording proxy setting and a recording notifier."""

import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from wireproxy_config import ConfigStore
from wireproxy_status import StatusModel
from wireproxy_supervisor import ProcessSupervisor


class FakeProcess:
    def __init__(self, pid, argv):
        self.pid = pid
        self.argv = argv
        self.signals = []

    def terminate(self):
        self.signals.append('SIGTERM')


class FakeLauncher:
    """Launcher whose exits and timers are triggered by the test."""

    def __init__(self):
        self.spawned = []
        self.timers = []
        self.spawn_error = None
        self._watchers = {}
        self._next_pid = 1000
        self.log = []   # ordered 'spawn:<pid>' / 'exit:<pid>' entries

    def spawn(self, argv):
        if self.spawn_error is not None:
            raise self.spawn_error
        self._next_pid += 1
        proc = FakeProcess(self._next_pid, argv)
        self.spawned.append(proc)
        self.log.append(f'spawn:{proc.pid}')
        return proc

    def watch(self, proc, on_exit, on_error):
        self._watchers[proc.pid] = (on_exit, on_error)

    def timeout(self, seconds, callback):
        self.timers.append((seconds, callback))

    # ── test controls ─────────────────────────────────────────────────────────

    def alive(self):
        return [p for p in self.spawned if p.pid in self._watchers]

    def exit(self, proc, returncode):
        on_exit, _ = self._watchers.pop(proc.pid)
        self.log.append(f'exit:{proc.pid}')
        on_exit(returncode)

    def fail(self, proc, exc):
        _, on_error = self._watchers.pop(proc.pid)
        self.log.append(f'exit:{proc.pid}')
        on_error(exc)

    def fire_timers(self):
        timers, self.timers = self.timers, []
        for _seconds, callback in timers:
            callback()


class RecordingProxy:
    def __init__(self):
        self.value = ''
        self.history = []

    def get(self):
        return self.value

    def set(self, url):
        self.value = url
        self.history.append(url)

    def clear(self):
        self.value = ''
        self.history.append('')


class RecordingNotifier:
    def __init__(self):
        self.errors = []

    def error(self, message):
        self.errors.append(message)


class FakePicker:
    def __init__(self, answer=None):
        self.answer = answer
        self.filters = []

    def choose_file(self, file_filter):
        self.filters.append(file_filter)
        return self.answer


@pytest.fixture
def launcher():
    return FakeLauncher()


@pytest.fixture
def proxy():
    return RecordingProxy()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def picker():
    return FakePicker()


@pytest.fixture
def supervisor(proxy, launcher):
    return ProcessSupervisor(proxy, binary='wireproxy', port=25345, launcher=launcher)


@pytest.fixture
def store(tmp_path):
    return ConfigStore(str(tmp_path / 'state' / 'wireproxy.conf'))


@pytest.fixture
def status():
    return StatusModel(25345)


@pytest.fixture
def profile_dir(tmp_path):
    d = tmp_path / 'profiles'
    d.mkdir()
    for name in ('home.conf', 'office.conf'):
        (d / name).write_text('[Interface]\nPrivateKey = x\n')
    return d
