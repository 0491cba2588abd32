"""Tray status state machine: NoConfig, Starting, Connected, Error."""

import logging
from enum import Enum
from typing import Callable, Optional

log = logging.getLogger(__name__)

EXTENSION_NAME = 'WireGuard'


# ── Enums ─────────────────────────────────────────────────────────────────────
class StatusState(Enum):
    NO_CONFIG = ('No Config',   '⚫', 'network-vpn-disconnected-symbolic')
    STARTING  = ('Starting',    '🟡', 'network-vpn-acquiring-symbolic')
    CONNECTED = ('Connected',   '🟢', 'network-vpn-symbolic')
    ERROR     = ('Error',       '🔴', 'network-error-symbolic')

    @property
    def label(self):     return self.value[0]
    @property
    def dot(self):       return self.value[1]
    @property
    def icon_name(self): return self.value[2]


class StatusEvent(Enum):
    SELECTED = 'selected'
    STABLE   = 'stable'
    FAILED   = 'failed'
    RESET    = 'reset'


_ANY = frozenset(StatusState)

# event -> (states it is accepted from, resulting state)
_TRANSITIONS = {
    StatusEvent.SELECTED: (_ANY, StatusState.STARTING),
    StatusEvent.STABLE:   (frozenset({StatusState.STARTING}), StatusState.CONNECTED),
    StatusEvent.FAILED:   (frozenset({StatusState.STARTING, StatusState.CONNECTED}), StatusState.ERROR),
    StatusEvent.RESET:    (_ANY, StatusState.NO_CONFIG),
}


def describe(state: StatusState, profile_name: str, port: int) -> tuple[str, str]:
    """Return (label, tooltip) for the status indicator."""
    if state == StatusState.CONNECTED:
        label = f'{EXTENSION_NAME}: {profile_name or state.label}'
    elif state == StatusState.STARTING:
        label = f'{EXTENSION_NAME}: Starting...'
    else:
        label = f'{EXTENSION_NAME}: {state.label}'
    tooltip = f'Status: {state.label}\nWireproxy port: {port}'
    return label, tooltip


class StatusModel:
    def __init__(self, port: int, state: StatusState = StatusState.NO_CONFIG):
        self.port = port
        self.state = state
        self.profile = ''
        self._listeners: list[Callable[[StatusState, str, str], None]] = []

    def subscribe(self, callback: Callable[[StatusState, str, str], None]):
        self._listeners.append(callback)

    def describe(self) -> tuple[str, str]:
        return describe(self.state, self.profile, self.port)

    def transition(self, event: StatusEvent, profile: Optional[str] = None) -> StatusState:
        allowed, new_state = _TRANSITIONS[event]
        if self.state not in allowed:
            log.debug('Ignoring %s while %s', event.value, self.state.label)
            return self.state

        new_profile = self.profile if profile is None else profile
        if new_state == StatusState.NO_CONFIG:
            new_profile = ''
        if new_state == self.state and new_profile == self.profile:
            return self.state

        log.info('Status %s -> %s', self.state.label, new_state.label)
        self.state = new_state
        self.profile = new_profile
        label, tooltip = self.describe()
        for callback in list(self._listeners):
            callback(new_state, label, tooltip)
        return new_state
