"""User-facing workflow around the supervisor: activation, config selection, failure handling."""

import logging
import os
from typing import Callable, Optional

from wireproxy_config import DEFAULT_BIND_ADDRESS, PROXY_PORT, ConfigStore, profile_name
from wireproxy_status import StatusEvent, StatusModel
from wireproxy_supervisor import Outcome, ProcessSupervisor, SupervisorEvent, describe_failure

log = logging.getLogger(__name__)

CONFIG_FILTER = ('WireGuard Config', ['conf'])


class TunnelController:
    """
    Drives ConfigStore and StatusModel from user actions and supervisor events.

    ``notify`` needs an ``error(message)`` method and ``picker`` a
    ``choose_file(filter) -> path | None`` method; both are provided by the
    tray UI and replaced by fakes in tests.
    """

    def __init__(self, store: ConfigStore, supervisor: ProcessSupervisor,
                 status: StatusModel, notify, picker=None,
                 bind_address: str = DEFAULT_BIND_ADDRESS, port: int = PROXY_PORT):
        self.store = store
        self.supervisor = supervisor
        self.status = status
        self.bind_address = bind_address
        self.port = port
        self._notify = notify
        self._picker = picker
        self._pending_path: Optional[str] = None
        supervisor.subscribe(self._on_supervisor_event)

    # ── Host lifecycle ────────────────────────────────────────────────────────

    def activate(self):
        """Start the persisted configuration, if there is one."""
        cfg = self.store.read()
        if cfg is None:
            self.status.transition(StatusEvent.RESET)
            return
        profile = profile_name(cfg.endpoint_path)
        log.info('Resuming profile %s from %s', profile, self.store.path)
        self.status.transition(StatusEvent.SELECTED, profile)
        # A broken startup config is kept so it can be inspected and retried.
        self.supervisor.start(self.store.path, profile, is_new_config=False)

    def deactivate(self, on_done: Optional[Callable[[], None]] = None):
        self.supervisor.stop(on_done)

    # ── User actions ──────────────────────────────────────────────────────────

    def configure(self):
        if self._picker is None:
            log.warning('No file picker available')
            return
        self.select_endpoint(self._picker.choose_file(CONFIG_FILTER))

    def select_endpoint(self, path: Optional[str]):
        if not path:
            log.debug('Config selection cancelled')
            return
        path = os.path.abspath(path)
        if path == (self._pending_path or self.store.current_endpoint):
            log.info('%s is already active', path)
            return
        self._pending_path = path
        self.supervisor.stop(lambda: self._apply_selection(path))

    def _apply_selection(self, path: str):
        if path != self._pending_path:
            log.debug('Selection of %s superseded', path)
            return
        self._pending_path = None
        self.store.write(path, self.bind_address, self.port)
        profile = profile_name(path)
        self.status.transition(StatusEvent.SELECTED, profile)
        self.supervisor.start(self.store.path, profile, is_new_config=True)

    # ── Supervisor events ─────────────────────────────────────────────────────

    def _on_supervisor_event(self, event: SupervisorEvent):
        if event.outcome == Outcome.STABLE:
            self.status.transition(StatusEvent.STABLE, event.profile)
            return
        if not event.outcome.is_failure:
            return

        self._notify.error(describe_failure(event))
        self.status.transition(StatusEvent.FAILED)
        if event.is_new_config:
            log.warning('Discarding newly selected profile %s', event.profile)
            self.store.clear()
            self.status.transition(StatusEvent.RESET)
