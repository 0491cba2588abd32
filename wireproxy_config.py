"""Persistence of the wireproxy.conf that binds a WireGuard profile to the local HTTP proxy."""

import logging
import os
import tempfile
from typing import NamedTuple, Optional

log = logging.getLogger(__name__)

# ── Paths & constants ─────────────────────────────────────────────────────────
WORKSPACE    = os.path.expanduser('~/.wireproxy-tray')
CONFIG_PATH  = os.path.join(WORKSPACE, 'wireproxy.conf')

PROXY_PORT           = 25345
DEFAULT_BIND_ADDRESS = '127.0.0.1'
PROFILE_SUFFIX       = '.conf'


class SupervisorConfig(NamedTuple):
    endpoint_path: str
    bind_address: str = DEFAULT_BIND_ADDRESS
    bind_port: int = PROXY_PORT


def profile_name(endpoint_path: Optional[str]) -> str:
    """Display name of a WireGuard profile: file name without directory and .conf."""
    if not endpoint_path:
        return ''
    name = os.path.basename(endpoint_path)
    if name.endswith(PROFILE_SUFFIX) and name != PROFILE_SUFFIX:
        name = name[:-len(PROFILE_SUFFIX)]
    return name


def render_config(cfg: SupervisorConfig) -> str:
    return (
        f'WGConfig = "{cfg.endpoint_path}"\n'
        '[http]\n'
        f'BindAddress = {cfg.bind_address}:{cfg.bind_port}\n'
    )


# ── Parsing ───────────────────────────────────────────────────────────────────
def _split_bind_address(value: str) -> Optional[tuple[str, int]]:
    host, sep, port = value.rpartition(':')
    if not sep or not host or not port.isdigit():
        return None
    port_num = int(port)
    if not 1 <= port_num <= 65535:
        return None
    return host, port_num


def parse_config(text: str) -> Optional[SupervisorConfig]:
    """
    Extract the fields we own from a wireproxy.conf body.

    Only ``WGConfig`` is required; everything else in the file belongs to
    wireproxy and is left alone. Returns None when no usable WGConfig is found.
    """
    endpoint = None
    bind = None
    section = ''
    for raw in text.splitlines():
        line = raw.strip()
        if not line or line[0] in '#;':
            continue
        if line.startswith('[') and line.endswith(']'):
            section = line[1:-1].strip().lower()
            continue
        key, sep, value = line.partition('=')
        if not sep:
            continue
        key, value = key.strip(), value.strip()
        if key == 'WGConfig' and endpoint is None:
            if len(value) >= 2 and value[0] == value[-1] == '"':
                value = value[1:-1]
            endpoint = value
        elif key == 'BindAddress' and section == 'http' and bind is None:
            bind = _split_bind_address(value)

    if not endpoint or not os.path.isabs(endpoint):
        return None
    if bind is None:
        return SupervisorConfig(endpoint)
    return SupervisorConfig(endpoint, bind[0], bind[1])


# ── Store ─────────────────────────────────────────────────────────────────────
class ConfigStore:
    def __init__(self, path: str = CONFIG_PATH):
        self.path = path
        self.current_endpoint: Optional[str] = None

    def exists(self) -> bool:
        return os.path.exists(self.path)

    def read(self) -> Optional[SupervisorConfig]:
        if not os.path.exists(self.path):
            self.current_endpoint = None
            return None
        try:
            with open(self.path, encoding='utf-8') as f:
                cfg = parse_config(f.read())
        except (OSError, UnicodeDecodeError) as exc:
            log.warning('Cannot read %s: %s', self.path, exc)
            cfg = None
        if cfg is None:
            log.info('No usable WGConfig entry in %s', self.path)
        self.current_endpoint = cfg.endpoint_path if cfg else None
        return cfg

    def write(self, endpoint_path: str,
              bind_address: str = DEFAULT_BIND_ADDRESS,
              bind_port: int = PROXY_PORT) -> SupervisorConfig:
        if not endpoint_path or not os.path.isabs(endpoint_path):
            raise ValueError(f'WireGuard config path must be absolute: {endpoint_path!r}')
        cfg = SupervisorConfig(endpoint_path, bind_address, bind_port)

        config_dir = os.path.dirname(self.path)
        os.makedirs(config_dir, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix='.wireproxy-', suffix='.tmp', dir=config_dir)
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                f.write(render_config(cfg))
            os.replace(tmp, self.path)
        except BaseException:
            try:
                os.remove(tmp)
            except FileNotFoundError:
                pass
            raise

        self.current_endpoint = endpoint_path
        log.info('Wrote %s for profile %s', self.path, profile_name(endpoint_path))
        return cfg

    def clear(self):
        try:
            os.remove(self.path)
            log.info('Removed %s', self.path)
        except FileNotFoundError:
            pass
        self.current_endpoint = None
