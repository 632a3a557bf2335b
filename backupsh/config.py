import os
import stat
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

import yaml

from backupsh.backup.plan import DEFAULT_EXCLUDE_PATTERNS
from backupsh.errors import ConfigError


CONFIG_ENV_VAR = 'BACKUPSH_CONFIG'
COMPAT_ENV_VAR = 'BACKUPSH_COMPAT'
LOG_FILE_ENV_VAR = 'BACKUPSH_LOG_FILE'

TRUE_VALUES = ('yes', 'true', '1', 'on')


class Config:
    """Built-in defaults, used when no config file sets a value"""

    DEFAULT_MODE = 'full'
    DEFAULT_INCLUDE_PATHS = ()
    DEFAULT_EXCLUDE_PATTERNS = DEFAULT_EXCLUDE_PATTERNS
    DEFAULT_OUTPUT_DIR = None  # current directory
    DEFAULT_LABEL = None
    DEFAULT_RECIPIENT = None
    DEFAULT_ENCRYPT = False
    DEFAULT_ONE_FILE_SYSTEM = False
    DEFAULT_SKIP_CHECKSUM = False
    DEFAULT_CONTINUE_ON_CHANGE = False
    DEFAULT_SKIP_ROOT_CHECK = False
    DEFAULT_COMPAT_MODE = False
    DEFAULT_VERIFY = False

    # SSH
    SSH_PORT = None
    SSH_IDENTITY_FILE = None
    SSH_CONFIG_FILE = '~/.ssh/config'
    SSH_CONNECT_TIMEOUT = 30

    # Logging
    LOG_FILE = None  # or $BACKUPSH_LOG_FILE


# Config file keys and the Defaults field each one sets
FILE_KEYS = {
    'mode': 'mode',
    'include_paths': 'include_paths',
    'exclude_patterns': 'exclude_patterns',
    'output_dir': 'output_dir',
    'label': 'label',
    'recipient': 'recipient',
    'encrypt': 'encrypt',
    'one_file_system': 'one_file_system',
    'skip_checksum': 'skip_checksum',
    'continue_on_change': 'continue_on_change',
    'skip_root_check': 'skip_root_check',
    'compat': 'compat_mode',
    'verify': 'verify',
    'log_file': 'log_file',
}

SSH_KEYS = {
    'port': 'ssh_port',
    'identity_file': 'ssh_identity_file',
    'config_file': 'ssh_config_file',
    'connect_timeout': 'ssh_connect_timeout',
}

BOOL_FIELDS = (
    'encrypt', 'one_file_system', 'skip_checksum', 'continue_on_change',
    'skip_root_check', 'compat_mode', 'verify',
)


@dataclass(frozen=True)
class Defaults:
    """Fully populated defaults handed to the command-line layer."""
    mode: str = Config.DEFAULT_MODE
    include_paths: Tuple[str, ...] = Config.DEFAULT_INCLUDE_PATHS
    exclude_patterns: Tuple[str, ...] = Config.DEFAULT_EXCLUDE_PATTERNS
    output_dir: Optional[str] = Config.DEFAULT_OUTPUT_DIR
    label: Optional[str] = Config.DEFAULT_LABEL
    recipient: Optional[str] = Config.DEFAULT_RECIPIENT
    encrypt: bool = Config.DEFAULT_ENCRYPT
    one_file_system: bool = Config.DEFAULT_ONE_FILE_SYSTEM
    skip_checksum: bool = Config.DEFAULT_SKIP_CHECKSUM
    continue_on_change: bool = Config.DEFAULT_CONTINUE_ON_CHANGE
    skip_root_check: bool = Config.DEFAULT_SKIP_ROOT_CHECK
    compat_mode: bool = Config.DEFAULT_COMPAT_MODE
    verify: bool = Config.DEFAULT_VERIFY
    ssh_port: Optional[int] = Config.SSH_PORT
    ssh_identity_file: Optional[str] = Config.SSH_IDENTITY_FILE
    ssh_config_file: Optional[str] = Config.SSH_CONFIG_FILE
    ssh_connect_timeout: int = Config.SSH_CONNECT_TIMEOUT
    log_file: Optional[str] = Config.LOG_FILE
    source: Optional[Path] = None


def normalize_bool(value: Any) -> bool:
    """Interpret yes/true/1/on (any case) as True, anything else as False."""
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    return str(value).strip().lower() in TRUE_VALUES


def config_search_paths(explicit: Optional[str] = None, environ: Optional[Mapping[str, str]] = None) -> List[Path]:
    """
    Candidate config files, highest priority first.

    Args:
        explicit: Path given with --config
        environ: Environment mapping (defaults to os.environ)
    """
    environ = os.environ if environ is None else environ
    home = Path(environ.get('HOME') or Path.home())

    paths = []
    if explicit:
        paths.append(Path(explicit).expanduser())
    if environ.get(CONFIG_ENV_VAR):
        paths.append(Path(environ[CONFIG_ENV_VAR]).expanduser())
    if environ.get('XDG_CONFIG_HOME'):
        paths.append(Path(environ['XDG_CONFIG_HOME']) / 'backupsh' / 'config.yaml')
    paths.append(home / '.config' / 'backupsh' / 'config.yaml')
    paths.append(home / '.backupsh.yaml')
    return paths


def ensure_secure_config(path: Path):
    """
    Refuse config files other users could have written.

    Raises:
        ConfigError: If the file is group or world writable
    """
    mode = path.stat().st_mode
    if mode & (stat.S_IWGRP | stat.S_IWOTH):
        raise ConfigError(f"Config file {path} is writable by group/others; refusing to load")


def _as_list(key: str, value: Any) -> Tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return (value,)
    if isinstance(value, (list, tuple)):
        return tuple(str(item) for item in value)
    raise ConfigError(f"Config key {key!r} must be a list of paths")


def parse_config(data: Dict[str, Any], source: Optional[Path] = None) -> Defaults:
    """
    Build Defaults from a parsed config mapping.

    Raises:
        ConfigError: If the mapping contains unknown keys or bad values
    """
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {source} must contain a mapping")

    values = {}
    for key, value in data.items():
        if key == 'ssh':
            if not isinstance(value, dict):
                raise ConfigError("Config key 'ssh' must be a mapping")
            for ssh_key, ssh_value in value.items():
                if ssh_key not in SSH_KEYS:
                    raise ConfigError(f"Unknown config key 'ssh.{ssh_key}' in {source}")
                values[SSH_KEYS[ssh_key]] = ssh_value
            continue
        if key not in FILE_KEYS:
            raise ConfigError(f"Unknown config key {key!r} in {source}")
        values[FILE_KEYS[key]] = value

    for name in ('include_paths', 'exclude_patterns'):
        if name in values:
            values[name] = _as_list(name, values[name])
    for name in BOOL_FIELDS:
        if name in values:
            values[name] = normalize_bool(values[name])
    for name in ('ssh_port', 'ssh_connect_timeout'):
        if values.get(name) is not None:
            try:
                values[name] = int(values[name])
            except (TypeError, ValueError):
                raise ConfigError(f"Config key {name!r} must be an integer")
    for name in ('mode', 'output_dir', 'label', 'recipient', 'log_file', 'ssh_identity_file', 'ssh_config_file'):
        if values.get(name) is not None:
            values[name] = str(values[name])

    return Defaults(source=source, **values)


def load_config(explicit: Optional[str] = None, environ: Optional[Mapping[str, str]] = None) -> Defaults:
    """
    Load defaults from the first config file found.

    Args:
        explicit: Path given with --config (must exist if given)
        environ: Environment mapping (defaults to os.environ)

    Returns:
        Defaults, with source set to the file used (or None)

    Raises:
        ConfigError: If the file is missing, insecure or invalid
    """
    environ = os.environ if environ is None else environ

    if explicit and not Path(explicit).expanduser().is_file():
        raise ConfigError(f"Config file {explicit} not found")

    defaults = Defaults()
    for path in config_search_paths(explicit, environ):
        if path.is_file():
            ensure_secure_config(path)
            try:
                with open(path, 'r') as f:
                    data = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigError(f"Invalid YAML in config file {path}: {e}") from e
            defaults = parse_config(data, source=path)
            break

    if environ.get(COMPAT_ENV_VAR):
        defaults = replace(defaults, compat_mode=normalize_bool(environ[COMPAT_ENV_VAR]))
    if environ.get(LOG_FILE_ENV_VAR) and defaults.log_file is None:
        defaults = replace(defaults, log_file=environ[LOG_FILE_ENV_VAR])

    return defaults