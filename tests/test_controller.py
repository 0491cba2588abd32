import signal

import pytest

from wireproxy_controller import CONFIG_FILTER, TunnelController
from wireproxy_status import StatusState


@pytest.fixture
def controller(store, supervisor, status, notifier, picker):
    return TunnelController(store, supervisor, status, notifier, picker, port=25345)


class TestActivate:
    def test_without_config(self, controller, launcher, status):
        controller.activate()
        assert launcher.spawned == []
        assert status.state == StatusState.NO_CONFIG

    def test_resumes_persisted_profile(self, controller, store, launcher, status, profile_dir):
        store.write(str(profile_dir / 'home.conf'))
        controller.activate()

        assert launcher.spawned[0].argv == ['wireproxy', '-c', store.path]
        assert status.state == StatusState.STARTING
        launcher.fire_timers()
        assert status.state == StatusState.CONNECTED
        assert status.describe()[0] == 'WireGuard: home'

    def test_existing_config_failure_preserves_config(self, controller, store, launcher,
                                                      status, notifier, profile_dir):
        store.write(str(profile_dir / 'home.conf'))
        launcher.spawn_error = FileNotFoundError(2, 'No such file', 'wireproxy')
        controller.activate()

        assert store.exists()
        assert store.read() is not None
        assert status.state == StatusState.ERROR
        assert len(notifier.errors) == 1
        assert 'not installed' in notifier.errors[0]

    def test_existing_config_crash_preserves_config(self, controller, store, launcher,
                                                    status, profile_dir):
        store.write(str(profile_dir / 'home.conf'))
        controller.activate()
        launcher.exit(launcher.spawned[0], 1)
        assert store.exists()
        assert status.state == StatusState.ERROR


class TestSelectEndpoint:
    def test_new_config_starts_and_connects(self, controller, store, launcher, status,
                                            notifier, profile_dir):
        path = str(profile_dir / 'home.conf')
        controller.select_endpoint(path)

        assert store.read().endpoint_path == path
        assert status.state == StatusState.STARTING
        launcher.fire_timers()
        assert status.state == StatusState.CONNECTED
        assert notifier.errors == []

    def test_new_config_crash_clears_config(self, controller, store, launcher, status,
                                            notifier, profile_dir):
        controller.select_endpoint(str(profile_dir / 'home.conf'))
        launcher.exit(launcher.spawned[0], 1)
        launcher.fire_timers()

        assert not store.exists()
        assert store.current_endpoint is None
        assert status.state == StatusState.NO_CONFIG
        assert len(notifier.errors) == 1
        assert 'exited with code 1' in notifier.errors[0]

    def test_new_config_spawn_error_clears_config(self, controller, store, launcher,
                                                  status, profile_dir):
        launcher.spawn_error = PermissionError(13, 'Permission denied')
        controller.select_endpoint(str(profile_dir / 'home.conf'))
        assert not store.exists()
        assert status.state == StatusState.NO_CONFIG

    def test_same_path_is_noop(self, controller, launcher, profile_dir):
        path = str(profile_dir / 'home.conf')
        controller.select_endpoint(path)
        controller.select_endpoint(path)
        assert len(launcher.spawned) == 1
        assert launcher.spawned[0].signals == []

    def test_cancelled_selection_is_noop(self, controller, launcher, store):
        controller.select_endpoint(None)
        assert launcher.spawned == []
        assert not store.exists()

    def test_switch_waits_for_previous_stop(self, controller, store, launcher, status,
                                            notifier, profile_dir):
        controller.select_endpoint(str(profile_dir / 'home.conf'))
        launcher.fire_timers()
        first = launcher.spawned[0]

        office = str(profile_dir / 'office.conf')
        controller.select_endpoint(office)
        assert first.signals == ['SIGTERM']
        assert len(launcher.spawned) == 1
        assert store.read().endpoint_path.endswith('home.conf')

        launcher.exit(first, -signal.SIGTERM)
        assert len(launcher.spawned) == 2
        assert store.read().endpoint_path == office
        assert status.state == StatusState.STARTING
        assert notifier.errors == []

        launcher.fire_timers()
        assert status.describe()[0] == 'WireGuard: office'

    def test_repeated_pending_selection_is_noop(self, controller, launcher, profile_dir):
        controller.select_endpoint(str(profile_dir / 'home.conf'))
        launcher.fire_timers()
        office = str(profile_dir / 'office.conf')
        controller.select_endpoint(office)
        controller.select_endpoint(office)

        launcher.exit(launcher.spawned[0], -signal.SIGTERM)
        assert len(launcher.spawned) == 2
        assert launcher.spawned[1].signals == []

    def test_only_latest_pending_selection_is_applied(self, controller, store, launcher,
                                                      profile_dir):
        controller.select_endpoint(str(profile_dir / 'home.conf'))
        launcher.fire_timers()
        controller.select_endpoint(str(profile_dir / 'office.conf'))
        controller.select_endpoint(str(profile_dir / 'home.conf'))

        launcher.exit(launcher.spawned[0], -signal.SIGTERM)
        assert len(launcher.spawned) == 2
        assert store.read().endpoint_path.endswith('home.conf')

    def test_write_failure_still_lets_quit_finish(self, controller, store, launcher,
                                                  monkeypatch, profile_dir):
        controller.select_endpoint(str(profile_dir / 'home.conf'))
        launcher.fire_timers()
        controller.select_endpoint(str(profile_dir / 'office.conf'))
        done = []
        controller.deactivate(lambda: done.append('quit'))

        def full_disk(*args, **kwargs):
            raise OSError(28, 'No space left on device')

        monkeypatch.setattr(store, 'write', full_disk)
        with pytest.raises(OSError):
            launcher.exit(launcher.spawned[0], -signal.SIGTERM)
        assert done == ['quit']
        assert not controller.supervisor.is_running

    def test_crash_of_proven_config_is_kept(self, controller, store, launcher, status,
                                            profile_dir):
        controller.select_endpoint(str(profile_dir / 'home.conf'))
        launcher.fire_timers()
        launcher.exit(launcher.spawned[0], -signal.SIGKILL)
        assert store.exists()
        assert status.state == StatusState.ERROR


class TestConfigure:
    def test_asks_picker_for_conf_files(self, controller, picker, launcher, profile_dir):
        picker.answer = str(profile_dir / 'office.conf')
        controller.configure()
        assert picker.filters == [CONFIG_FILTER]
        assert len(launcher.spawned) == 1

    def test_cancel(self, controller, picker, launcher):
        controller.configure()
        assert launcher.spawned == []


class TestDeactivate:
    def test_quit_waits_for_exit(self, controller, launcher, proxy, notifier, profile_dir):
        controller.select_endpoint(str(profile_dir / 'home.conf'))
        launcher.fire_timers()
        done = []
        controller.deactivate(lambda: done.append(True))
        assert done == []
        launcher.exit(launcher.spawned[0], -signal.SIGTERM)
        assert done == [True]
        assert proxy.get() == ''
        assert notifier.errors == []

    def test_quit_without_process(self, controller):
        done = []
        controller.deactivate(lambda: done.append(True))
        assert done == [True]
