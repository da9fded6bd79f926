"""Gate configuration management.

Settings are read once at startup from a single file in one of two formats:
- YAML (*.yaml / *.yml): flat mapping of setting name to value
- UCI (OpenWrt /etc/config style): `option key 'value'` and `list key 'value'`

Resolution order for the config file:
1. Explicit path (--config)
2. $FILEGATE_CONFIG environment variable
3. /etc/config/fileshare (OpenWrt package default)

Bad values never abort startup: each one is logged and replaced by its
default, and a missing or unreadable file yields the full default config.
"""

import logging
import os
import re
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Callable, Optional

try:
    import yaml
except ImportError:
    yaml = None  # type: ignore[assignment]

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = Path('/etc/config/fileshare')
DEFAULT_CERT_DIR = Path.home() / '.filegate' / 'certs'
DEFAULT_PASSWORD = '123456'

# UCI line formats: option key 'value' / list key 'value'
_UCI_LINE = re.compile(r"""^\s*(option|list)\s+(\w+)\s+['"]([^'"]*)['"]""")

_TRUE_VALUES = {'1', 'true', 'yes', 'on', 'enabled'}
_FALSE_VALUES = {'0', 'false', 'no', 'off', 'disabled', ''}


class ConfigError(Exception):
    """Configuration error."""


@dataclass(frozen=True)
class GateConfig:
    """Static settings for the gate, fixed for the process lifetime."""
    port: int = 3000
    password: str = DEFAULT_PASSWORD
    allowed_hosts: tuple[str, ...] = ()
    enable_https: bool = False
    https_port: int = 3443
    use_domain: bool = False
    domain_name: str = 'fileshare.lan'
    bind: str = '0.0.0.0'
    cert_dir: Path = DEFAULT_CERT_DIR
    trust_proxy: bool = False
    plaintext_fallback: bool = True

    # Where the settings came from (None = built-in defaults)
    source: Optional[Path] = None

    @property
    def uses_default_password(self) -> bool:
        return self.password == DEFAULT_PASSWORD


def _coerce_port(value: Any) -> int:
    try:
        port = int(str(value).strip())
    except ValueError:
        raise ConfigError(f"Invalid port value: {value!r}")
    if not 1 <= port <= 65535:
        raise ConfigError(f"Port out of range: {port}")
    return port


def _coerce_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE_VALUES:
        return True
    if text in _FALSE_VALUES:
        return False
    raise ConfigError(f"Invalid boolean value: {value!r}")


def _coerce_text(value: Any) -> str:
    if value is None or isinstance(value, (dict, list)):
        raise ConfigError(f"Expected a string, got {value!r}")
    text = str(value).strip()
    if not text:
        raise ConfigError("Empty value")
    return text


def _coerce_hosts(value: Any) -> tuple[str, ...]:
    """Accept a comma-separated string or a list of fragments."""
    if isinstance(value, str):
        items = value.split(',')
    elif isinstance(value, (list, tuple)):
        items = []
        for entry in value:
            items.extend(str(entry).split(','))
    else:
        raise ConfigError(f"Invalid allowed_hosts value: {value!r}")
    return tuple(h.strip() for h in items if h.strip())


def _coerce_path(value: Any) -> Path:
    return Path(_coerce_text(value)).expanduser()


_COERCERS: dict[str, Callable[[Any], Any]] = {
    'port': _coerce_port,
    'password': _coerce_text,
    'allowed_hosts': _coerce_hosts,
    'enable_https': _coerce_bool,
    'https_port': _coerce_port,
    'use_domain': _coerce_bool,
    'domain_name': _coerce_text,
    'bind': _coerce_text,
    'cert_dir': _coerce_path,
    'trust_proxy': _coerce_bool,
    'plaintext_fallback': _coerce_bool,
}


def build_config(raw: dict, source: Optional[Path] = None) -> GateConfig:
    """Build a GateConfig from raw settings, substituting defaults for bad values."""
    defaults = {f.name: f.default for f in fields(GateConfig)}
    values: dict[str, Any] = {}

    for key, value in raw.items():
        coerce = _COERCERS.get(key)
        if coerce is None:
            logger.debug("Ignoring unknown setting: %s", key)
            continue
        try:
            values[key] = coerce(value)
        except ConfigError as e:
            logger.warning("Setting %s: %s, using default %r", key, e, defaults[key])

    return GateConfig(source=source, **values)


def _parse_yaml(path: Path) -> dict:
    """Parse a YAML file and return contents."""
    if yaml is None:
        raise ConfigError("PyYAML not installed. Run: pip install pyyaml")
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}")
    if not isinstance(data, dict):
        raise ConfigError(f"Expected a mapping in {path}, got {type(data).__name__}")
    return data


def _parse_uci(path: Path) -> dict:
    """Parse UCI option/list lines into a settings dict.

    Repeated `list` entries accumulate; a later `option` overrides.
    """
    data: dict[str, Any] = {}
    for line in path.read_text(encoding="utf-8").splitlines():
        match = _UCI_LINE.match(line)
        if not match:
            continue
        kind, key, value = match.groups()
        if kind == 'list':
            data.setdefault(key, [])
            if isinstance(data[key], list):
                data[key].append(value)
            else:
                data[key] = [data[key], value]
        else:
            data[key] = value
    return data


def parse_config_file(path: Path) -> dict:
    """Read raw settings from a YAML or UCI config file."""
    if path.suffix in ('.yaml', '.yml'):
        return _parse_yaml(path)
    return _parse_uci(path)


def get_config_path(explicit: Optional[Path] = None) -> Path:
    """Resolve which config file to read (it may not exist)."""
    if explicit is not None:
        return Path(explicit)
    if env_path := os.environ.get('FILEGATE_CONFIG'):
        return Path(env_path)
    return DEFAULT_CONFIG_FILE


def load_config(path: Optional[Path] = None) -> GateConfig:
    """Load gate configuration. Never raises for bad or missing settings."""
    config_path = get_config_path(path)

    if not config_path.is_file():
        logger.warning("Config file not found: %s, using defaults", config_path)
        config = GateConfig()
    else:
        try:
            raw = parse_config_file(config_path)
        except (ConfigError, OSError, UnicodeDecodeError) as e:
            logger.error("Failed to read config %s: %s", config_path, e)
            logger.warning("Using default configuration")
            raw = {}
        config = build_config(raw, source=config_path)

    logger.info(
        "Config loaded: port=%d, password=%s, allowed hosts=%s, https=%s",
        config.port,
        'default' if config.uses_default_password else 'set',
        ','.join(config.allowed_hosts) or 'none',
        f'on (port {config.https_port})' if config.enable_https else 'off',
    )
    if config.uses_default_password:
        logger.warning("Using the default access password, set 'password' in %s", config_path)

    return config
