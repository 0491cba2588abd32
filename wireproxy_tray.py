#!/usr/bin/python3
"""WireProxy Tray for Linux: runs wireproxy for a chosen WireGuard profile and shows its status."""

import gi
gi.require_version('Gtk', '3.0')

import logging
import os
import signal
import subprocess
import sys
from typing import Optional

from gi.repository import Gtk, GLib

from version import VERSION
from wireproxy_config import CONFIG_PATH, WORKSPACE, ConfigStore
from wireproxy_controller import TunnelController
from wireproxy_proxy import GnomeProxySetting
from wireproxy_settings import (LOG_LEVELS, apply_autostart, autostart_enabled,
                                is_valid_port, load_settings, save_settings)
from wireproxy_status import StatusModel, StatusState
from wireproxy_supervisor import ProcessSupervisor

# ── AppIndicator detection ────────────────────────────────────────────────────
_INDICATOR_BACKEND = None
try:
    gi.require_version('AyatanaAppIndicator3', '0.1')
    from gi.repository import AyatanaAppIndicator3 as _AI3
    _INDICATOR_BACKEND = 'ayatana'
except (ValueError, ImportError):
    try:
        gi.require_version('AppIndicator3', '0.1')
        from gi.repository import AppIndicator3 as _AI3
        _INDICATOR_BACKEND = 'appindicator'
    except (ValueError, ImportError):
        _AI3 = None

LOG_PATH      = os.path.join(WORKSPACE, 'wireproxy-tray.log')
FALLBACK_ICON = 'network-vpn'

log = logging.getLogger('wireproxy_tray')


def setup_logging(level: str = 'INFO'):
    os.makedirs(WORKSPACE, exist_ok=True)
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format='%(asctime)s [%(levelname)s] %(name)s: %(message)s',
        handlers=[
            logging.FileHandler(LOG_PATH),
            logging.StreamHandler(),
        ],
    )


def open_path(path: str):
    try:
        subprocess.Popen(['xdg-open', path])
    except OSError as exc:
        log.warning('Cannot open %s: %s', path, exc)


# ── GTK helpers ───────────────────────────────────────────────────────────────
def _alert(parent, title: str, body: str = '', msg_type=Gtk.MessageType.INFO):
    dlg = Gtk.MessageDialog(transient_for=parent, modal=True,
                            message_type=msg_type,
                            buttons=Gtk.ButtonsType.CLOSE, text=title)
    if body:
        dlg.format_secondary_text(body)
    dlg.run(); dlg.destroy()


class ErrorNotifier:
    """Non-blocking error popups; supervisor events must not spin a nested loop."""

    def __init__(self, parent: Gtk.Window):
        self._parent = parent

    def error(self, message: str):
        dlg = Gtk.MessageDialog(transient_for=self._parent, modal=False,
                                message_type=Gtk.MessageType.ERROR,
                                buttons=Gtk.ButtonsType.CLOSE, text='WireProxy')
        dlg.format_secondary_text(message)
        dlg.connect('response', lambda d, _r: d.destroy())
        dlg.show_all()


class ConfigFilePicker:
    def __init__(self, parent: Gtk.Window):
        self._parent = parent

    def choose_file(self, file_filter) -> Optional[str]:
        name, extensions = file_filter
        dlg = Gtk.FileChooserDialog(title='Select WireGuard Config',
                                    transient_for=self._parent,
                                    action=Gtk.FileChooserAction.OPEN)
        dlg.add_buttons('_Cancel', Gtk.ResponseType.CANCEL,
                        '_Select', Gtk.ResponseType.OK)
        dlg.set_default_response(Gtk.ResponseType.OK)
        flt = Gtk.FileFilter()
        flt.set_name(name)
        for ext in extensions:
            flt.add_pattern(f'*.{ext}')
        dlg.add_filter(flt)
        resp = dlg.run()
        path = dlg.get_filename() if resp == Gtk.ResponseType.OK else None
        dlg.destroy()
        return path


# ── Settings dialog ───────────────────────────────────────────────────────────
class SettingsDialog(Gtk.Dialog):
    def __init__(self, parent: Gtk.Window, app):
        super().__init__(title='Settings', transient_for=parent, modal=True)
        self._app = app
        self.set_default_size(360, -1)

        self.add_buttons('_Cancel', Gtk.ResponseType.CANCEL,
                         '_Save',   Gtk.ResponseType.OK)
        self.set_default_response(Gtk.ResponseType.OK)

        grid = Gtk.Grid(column_spacing=12, row_spacing=10,
                        margin_start=16, margin_end=16,
                        margin_top=16, margin_bottom=8)
        self.get_content_area().add(grid)

        self._binary = Gtk.Entry(activates_default=True)
        self._port = Gtk.Entry(activates_default=True)
        self._log_level = Gtk.ComboBoxText(halign=Gtk.Align.START)
        for level in LOG_LEVELS:
            self._log_level.append(level, level.title())
        self._launch_at_login = Gtk.Switch(halign=Gtk.Align.START)

        for row, (label, widget) in enumerate([
            ('wireproxy Binary:', self._binary),
            ('Proxy Port:',       self._port),
            ('Log Level:',        self._log_level),
            ('Launch at Login:',  self._launch_at_login),
        ]):
            lbl = Gtk.Label(label=label, xalign=1.0)
            lbl.set_width_chars(18)
            grid.attach(lbl, 0, row, 1, 1)
            grid.attach(widget, 1, row, 1, 1)

        self.refresh()
        self.show_all()

    def refresh(self):
        settings = self._app.settings
        self._binary.set_text(settings['binary'])
        self._port.set_text(str(settings['proxy_port']))
        self._log_level.set_active_id(settings['log_level'])
        self._launch_at_login.set_active(autostart_enabled())

    def run(self) -> bool:
        """Show dialog, save on OK. Returns True if saved."""
        while True:
            resp = super().run()
            if resp != Gtk.ResponseType.OK:
                self.hide()
                return False

            binary = self._binary.get_text().strip()
            port = self._port.get_text().strip()
            if not binary:
                _alert(self, 'Missing Field', 'wireproxy binary must not be empty.',
                       Gtk.MessageType.ERROR); continue
            if not is_valid_port(port):
                _alert(self, 'Invalid Port', 'Proxy Port must be between 1 and 65535.',
                       Gtk.MessageType.ERROR); continue

            settings = {
                'binary':     binary,
                'proxy_port': int(port),
                'log_level':  self._log_level.get_active_id() or 'INFO',
            }
            save_settings(settings)
            apply_autostart(self._launch_at_login.get_active(),
                            f'python3 {os.path.abspath(__file__)}')
            self._app.settings = settings
            self.hide()
            return True


# ── About dialog ──────────────────────────────────────────────────────────────
class AboutDialog(Gtk.Dialog):
    def __init__(self, parent: Gtk.Window):
        super().__init__(title='About WireProxy Tray', transient_for=parent, modal=True)
        self.set_default_size(300, -1)
        self.add_button('_Close', Gtk.ResponseType.CLOSE)

        vbox = Gtk.Box(orientation=Gtk.Orientation.VERTICAL, spacing=6,
                       margin_start=20, margin_end=20, margin_top=16, margin_bottom=12,
                       halign=Gtk.Align.CENTER)
        self.get_content_area().add(vbox)

        vbox.pack_start(Gtk.Image.new_from_icon_name(FALLBACK_ICON, Gtk.IconSize.DIALOG),
                        False, False, 0)
        name_lbl = Gtk.Label()
        name_lbl.set_markup('<b><big>WireProxy Tray</big></b>')
        vbox.pack_start(name_lbl, False, False, 2)

        ver_lbl = Gtk.Label(label=f'Version {VERSION}')
        ver_lbl.get_style_context().add_class('dim-label')
        vbox.pack_start(ver_lbl, False, False, 0)

        vbox.pack_start(Gtk.LinkButton(uri='https://github.com/pufferffish/wireproxy',
                                       label='wireproxy on GitHub'), False, False, 0)
        self.show_all()

    def run(self):
        super().run(); self.hide()


# ── Main application ──────────────────────────────────────────────────────────
class WireproxyTrayApp:
    def __init__(self, settings: dict):
        self.settings = settings
        self._root = Gtk.Window()
        self._root.set_title('WireProxy Tray')

        port = settings['proxy_port']
        self.status = StatusModel(port)
        self.store = ConfigStore(CONFIG_PATH)
        self.supervisor = ProcessSupervisor(GnomeProxySetting(),
                                            binary=settings['binary'], port=port)
        self.controller = TunnelController(self.store, self.supervisor, self.status,
                                           ErrorNotifier(self._root),
                                           ConfigFilePicker(self._root), port=port)

        self._dlg_settings = None
        self._dlg_about = None
        self._quitting = False

        self._menu = self._build_menu()
        self._setup_indicator()
        self.status.subscribe(self._render)
        self._render(self.status.state, *self.status.describe())

        for signum in (signal.SIGINT, signal.SIGTERM):
            GLib.unix_signal_add(GLib.PRIORITY_DEFAULT, signum, self._on_signal)
        GLib.idle_add(self._startup)

    def _startup(self) -> bool:
        self.controller.activate()
        return False  # run once

    # ── Indicator setup ───────────────────────────────────────────────────────

    def _setup_indicator(self):
        icon = StatusState.NO_CONFIG.icon_name
        if _INDICATOR_BACKEND:
            self._indicator = _AI3.Indicator.new(
                'org.wireproxy.Tray', icon,
                _AI3.IndicatorCategory.APPLICATION_STATUS)
            self._indicator.set_status(_AI3.IndicatorStatus.ACTIVE)
            self._indicator.set_menu(self._menu)
        else:
            self._si = Gtk.StatusIcon()
            self._si.set_from_icon_name(icon)
            self._si.set_visible(True)
            self._si.connect('activate',   lambda i: self.controller.configure())
            self._si.connect('popup-menu', lambda i, b, t: self._menu.popup(None, None, None, None, b, t))

    def _render(self, state: StatusState, label: str, tooltip: str):
        """Status indicator ``render(label, tooltip)``."""
        self._status_label.set_markup(f'{state.dot} <b>{GLib.markup_escape_text(label)}</b>')
        self._tooltip_item.set_label(tooltip.replace('\n', '  ·  '))
        self._status_item.show_all()
        theme = Gtk.IconTheme.get_default()
        icon_name = state.icon_name if theme.has_icon(state.icon_name) else FALLBACK_ICON
        if _INDICATOR_BACKEND:
            self._indicator.set_icon_full(icon_name, label)
            self._indicator.set_label(label, '')
            self._indicator.set_title(tooltip)
        elif hasattr(self, '_si'):
            self._si.set_from_icon_name(icon_name)
            self._si.set_tooltip_text(tooltip)

    # ── Menu construction ─────────────────────────────────────────────────────

    def _build_menu(self) -> Gtk.Menu:
        m = Gtk.Menu()

        # ── Status row (click to choose a profile) ────────────────────────────
        self._status_item = Gtk.MenuItem()
        self._status_label = Gtk.Label()
        self._status_label.set_halign(Gtk.Align.START)
        self._status_label.set_use_markup(True)
        self._status_item.add(self._status_label)
        self._status_item.connect('activate', lambda _: self.controller.configure())
        m.append(self._status_item)

        self._tooltip_item = Gtk.MenuItem(label='')
        self._tooltip_item.set_sensitive(False)
        m.append(self._tooltip_item)
        m.append(Gtk.SeparatorMenuItem())

        i = Gtk.MenuItem(label='Select WireGuard Config…')
        i.connect('activate', lambda _: self.controller.configure()); m.append(i)
        i = Gtk.MenuItem(label='Open Config File')
        i.connect('activate', self._on_open_config); m.append(i)
        i = Gtk.MenuItem(label='Open Log File')
        i.connect('activate', lambda _: open_path(LOG_PATH)); m.append(i)
        m.append(Gtk.SeparatorMenuItem())

        i = Gtk.MenuItem(label='Settings…')
        i.connect('activate', self._on_settings); m.append(i)
        i = Gtk.MenuItem(label='About WireProxy Tray')
        i.connect('activate', self._on_about); m.append(i)
        i = Gtk.MenuItem(label='Quit')
        i.connect('activate', lambda _: self.quit()); m.append(i)

        m.show_all()
        return m

    # ── Handlers ──────────────────────────────────────────────────────────────

    def _on_open_config(self, _):
        if not self.store.exists():
            _alert(self._root, 'No Config',
                   'Select a WireGuard config first.')
            return
        open_path(self.store.path)

    def _on_settings(self, _):
        if self._dlg_settings is None:
            self._dlg_settings = SettingsDialog(self._root, self)
        else:
            self._dlg_settings.refresh()
        if self._dlg_settings.run():
            logging.getLogger().setLevel(self.settings['log_level'])
            _alert(self._root, 'Settings Saved',
                   'Binary and port changes apply after restarting WireProxy Tray.')

    def _on_about(self, _):
        if self._dlg_about is None:
            self._dlg_about = AboutDialog(self._root)
        self._dlg_about.run()

    def _on_signal(self) -> bool:
        log.info('Signal received, shutting down')
        self.quit()
        return False

    # ── Quit ──────────────────────────────────────────────────────────────────

    def quit(self):
        if self._quitting:
            return
        self._quitting = True
        self.controller.deactivate(Gtk.main_quit)


# ── Entry point ───────────────────────────────────────────────────────────────
def main():
    settings = load_settings()
    setup_logging(settings['log_level'])
    log.info('WireProxy Tray %s starting (python %s)', VERSION, sys.version.split()[0])
    WireproxyTrayApp(settings)
    Gtk.main()


if __name__ == '__main__':
    main()
