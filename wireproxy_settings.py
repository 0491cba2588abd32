"""User preferences (settings.ini via GLib.KeyFile) and launch-at-login."""

import logging
import os

from gi.repository import GLib

from wireproxy_config import PROXY_PORT, WORKSPACE

log = logging.getLogger(__name__)

SETTINGS_PATH  = os.path.join(WORKSPACE, 'settings.ini')
AUTOSTART_DIR  = os.path.expanduser('~/.config/autostart')
AUTOSTART_FILE = os.path.join(AUTOSTART_DIR, 'org.wireproxy.Tray.desktop')

GROUP      = 'wireproxy'
LOG_LEVELS = ['DEBUG', 'INFO', 'WARNING', 'ERROR']

DEFAULTS = {
    'binary':     'wireproxy',
    'proxy_port': PROXY_PORT,
    'log_level':  'INFO',
}


def is_valid_port(value) -> bool:
    return str(value).isdigit() and 1 <= int(value) <= 65535


def load_settings(path: str = SETTINGS_PATH) -> dict:
    """Read settings.ini; every missing or invalid key falls back to its default."""
    settings = dict(DEFAULTS)
    kf = GLib.KeyFile()
    try:
        kf.load_from_file(path, GLib.KeyFileFlags.NONE)
    except GLib.Error as exc:
        if os.path.exists(path):
            log.warning('Ignoring unreadable settings file %s: %s', path, exc.message)
        return settings

    def _get(key):
        try:
            return kf.get_string(GROUP, key).strip()
        except GLib.Error:
            return None

    binary = _get('binary')
    if binary:
        settings['binary'] = binary

    port = _get('proxy_port')
    if port is not None:
        if is_valid_port(port):
            settings['proxy_port'] = int(port)
        else:
            log.warning('Invalid proxy_port %r in %s, using %s', port, path, PROXY_PORT)

    level = _get('log_level')
    if level and level.upper() in LOG_LEVELS:
        settings['log_level'] = level.upper()
    return settings


def save_settings(settings: dict, path: str = SETTINGS_PATH):
    if not is_valid_port(settings.get('proxy_port', PROXY_PORT)):
        raise ValueError('proxy_port must be between 1 and 65535')
    os.makedirs(os.path.dirname(path), exist_ok=True)
    kf = GLib.KeyFile()
    kf.set_string(GROUP, 'binary', settings.get('binary', DEFAULTS['binary']))
    kf.set_integer(GROUP, 'proxy_port', int(settings.get('proxy_port', PROXY_PORT)))
    kf.set_string(GROUP, 'log_level', settings.get('log_level', DEFAULTS['log_level']))
    kf.save_to_file(path)


# ── Launch at login ───────────────────────────────────────────────────────────
def autostart_enabled(path: str = AUTOSTART_FILE) -> bool:
    return os.path.exists(path)


def apply_autostart(enable: bool, exec_line: str, path: str = AUTOSTART_FILE):
    if enable:
        os.makedirs(os.path.dirname(path), exist_ok=True)
        content = (
            '[Desktop Entry]\n'
            'Name=WireProxy Tray\n'
            f'Exec={exec_line}\n'
            'Icon=network-vpn\n'
            'Type=Application\n'
            'X-GNOME-Autostart-enabled=true\n'
        )
        with open(path, 'w') as f:
            f.write(content)
        log.info('Enabled launch at login (%s)', path)
    else:
        try:
            os.remove(path)
            log.info('Disabled launch at login')
        except FileNotFoundError:
            pass
