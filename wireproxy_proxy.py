"""Desktop-wide HTTP proxy setting mirrored while wireproxy is meant to run."""

import logging
import subprocess
from typing import Optional
from urllib.parse import urlsplit

log = logging.getLogger(__name__)

PROXY_SCHEMA      = 'org.gnome.system.proxy'
HTTP_PROXY_SCHEMA = 'org.gnome.system.proxy.http'


def proxy_url(port: int, host: str = '127.0.0.1') -> str:
    return f'http://{host}:{port}'


class GnomeProxySetting:
    """
    The GNOME system proxy, driven through the ``gsettings`` CLI.

    The first ``set(url)`` remembers the user's proxy mode and HTTP host/port,
    then switches to a manual proxy at ``url``; ``clear()`` puts the remembered
    values back. ``get()`` reports the last value this instance wrote (``''``
    when cleared).
    """

    def __init__(self, gsettings: str = 'gsettings'):
        self._gsettings = gsettings
        self._value = ''
        self._saved: Optional[dict] = None

    def get(self) -> str:
        return self._value

    def set(self, url: str):
        parts = urlsplit(url)
        if not parts.hostname or not parts.port:
            raise ValueError(f'Proxy URL needs a host and a port: {url!r}')
        if self._saved is None:
            self._saved = self._snapshot(parts.hostname, parts.port)
        self._value = url
        self._write(HTTP_PROXY_SCHEMA, 'host', parts.hostname)
        self._write(HTTP_PROXY_SCHEMA, 'port', str(parts.port))
        self._write(PROXY_SCHEMA, 'mode', 'manual')
        log.info('System proxy set to %s', url)

    def clear(self):
        saved = self._saved or {'mode': 'none'}
        self._saved = None
        self._value = ''
        for key in ('host', 'port'):
            if key in saved:
                self._write(HTTP_PROXY_SCHEMA, key, saved[key])
        self._write(PROXY_SCHEMA, 'mode', saved['mode'])
        log.info('System proxy restored to mode %s', saved['mode'])

    def _snapshot(self, own_host: str, own_port: int) -> dict:
        mode = self._read(PROXY_SCHEMA, 'mode') or 'none'
        host = self._read(HTTP_PROXY_SCHEMA, 'host')
        port = self._read(HTTP_PROXY_SCHEMA, 'port')
        if mode == 'manual' and host == own_host and port == str(own_port):
            # Left over from a run that never cleared; nothing to give back.
            mode = 'none'
        saved = {'mode': mode}
        if host is not None:
            saved['host'] = host
        if port is not None:
            saved['port'] = port
        return saved

    def _read(self, schema: str, key: str) -> Optional[str]:
        out = self._gsettings_cmd('get', schema, key)
        if out is None:
            return None
        out = out.strip()
        if len(out) >= 2 and out[0] == out[-1] == "'":
            out = out[1:-1]
        return out

    def _write(self, schema: str, key: str, value: str) -> bool:
        return self._gsettings_cmd('set', schema, key, value) is not None

    def _gsettings_cmd(self, action: str, schema: str, key: str, *value: str) -> Optional[str]:
        try:
            r = subprocess.run([self._gsettings, action, schema, key, *value],
                               check=True, capture_output=True, text=True, timeout=5)
            return r.stdout
        except FileNotFoundError:
            log.warning('%s not found; system proxy left unchanged', self._gsettings)
        except subprocess.CalledProcessError as exc:
            log.warning('gsettings %s %s %s failed: %s', action, schema, key,
                        (exc.stderr or '').strip() or exc.returncode)
        except subprocess.TimeoutExpired:
            log.warning('gsettings %s %s %s timed out', action, schema, key)
        return None
