"""
Path-rule resolution for backup runs.

Turns a mode plus include/exclude/positional inputs into a BackupPlan that
either archives exactly the included paths (include-only) or archives the
filesystem root minus the excluded patterns.

Modes:
- full: whole filesystem, system directories excluded
- home: include-only, defaults to /home
- custom: user supplied includes and/or excludes
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, List, Optional, Tuple

from backupsh.errors import PlanError


MODES = ('full', 'home', 'custom')

DEFAULT_EXCLUDE_PATTERNS = (
    '/dev/*',
    '/proc/*',
    '/sys/*',
    '/run/*',
    '/tmp/*',
    '/var/log/*',
)

HOME_ROOT = '/home'

WILDCARD_CHARS = ('*', '?', '[')


@dataclass(frozen=True)
class PathArg:
    """A trailing positional path; literal paths are never widened."""
    path: str
    literal: bool = False


@dataclass(frozen=True)
class BackupOptions:
    """
    Parsed command-line options merged with config defaults.

    Explicit include/exclude lists come from the command line, the default_*
    lists from the config file (or built-in defaults).
    """
    host: str
    mode: str = 'full'
    include_paths: Tuple[str, ...] = ()
    exclude_paths: Tuple[str, ...] = ()
    default_include_paths: Tuple[str, ...] = ()
    default_exclude_paths: Tuple[str, ...] = DEFAULT_EXCLUDE_PATTERNS
    positional: Tuple[PathArg, ...] = ()
    include_only: bool = False
    compat: bool = False
    one_file_system: bool = False
    label: Optional[str] = None
    output_dir: Path = field(default_factory=Path.cwd)


@dataclass(frozen=True)
class BackupPlan:
    """Resolved, immutable description of what a backup run archives."""
    host: str
    mode: str
    include_only: bool
    include_paths: Tuple[str, ...]
    exclude_paths: Tuple[str, ...]
    one_file_system: bool = False
    label: Optional[str] = None
    output_dir: Path = field(default_factory=Path.cwd)

    @property
    def remote_name(self) -> str:
        """Hostname part of a user@host identity."""
        return self.host.rsplit('@', 1)[-1]


def normalize_path(path: str) -> str:
    """
    Strip trailing path separators.

    The filesystem root is kept as '/' rather than collapsing to ''.
    """
    stripped = path.rstrip('/')
    if not stripped and path.startswith('/'):
        return '/'
    return stripped


def has_wildcard(path: str) -> bool:
    return any(char in path for char in WILDCARD_CHARS)


def widen_exclude(path: str, literal: bool = False) -> str:
    """
    Widen an exclusion so it matches directory contents.

    Args:
        path: Exclusion path as typed by the user
        literal: If True, the path is returned normalized but unwidened

    Returns:
        Path with '/*' appended unless it is literal or already a glob
    """
    path = normalize_path(path)
    if literal or has_wildcard(path):
        return path
    if path == '/':
        return '/*'
    return f"{path}/*"


def _ordered_union(*groups: Iterable[str]) -> Tuple[str, ...]:
    seen = []
    for group in groups:
        for path in group:
            if path and path not in seen:
                seen.append(path)
    return tuple(seen)


def _normalized(paths: Iterable[str]) -> List[str]:
    return [normalize_path(path) for path in paths if path and normalize_path(path)]


def resolve_plan(options: BackupOptions) -> BackupPlan:
    """
    Resolve options into a BackupPlan.

    Args:
        options: Parsed options record

    Returns:
        Resolved BackupPlan

    Raises:
        PlanError: If the mode is unknown or the rules conflict
    """
    mode = (options.mode or '').strip().lower()
    if mode not in MODES:
        raise PlanError(f"Unknown mode {options.mode!r}; choose one of {', '.join(MODES)}")

    include_only = options.include_only or bool(options.include_paths)
    explicit_includes = _normalized(options.include_paths)
    explicit_excludes = _normalized(options.exclude_paths)

    # Positional paths
    if options.positional:
        if include_only:
            explicit_includes.extend(_normalized(arg.path for arg in options.positional))
        elif options.compat:
            for arg in options.positional:
                if normalize_path(arg.path):
                    explicit_excludes.append(widen_exclude(arg.path, arg.literal))
        else:
            literal = [arg.path for arg in options.positional if arg.literal]
            if literal:
                raise PlanError(
                    f"Literal path marker is only supported in compatibility mode: {literal[0]}"
                )
            added = _normalized(arg.path for arg in options.positional)
            if added:
                explicit_includes.extend(added)
                include_only = True

    default_includes = _normalized(options.default_include_paths)
    default_excludes = _normalized(options.default_exclude_paths)

    if mode == 'full':
        if explicit_includes or include_only:
            raise PlanError(
                "Mode full is incompatible with include paths; omit --mode full or use --mode custom"
            )
        includes = ()
        include_only = False
    elif mode == 'home':
        include_only = True
        includes = _ordered_union(default_includes, explicit_includes) or (HOME_ROOT,)
    else:
        if not (explicit_includes or explicit_excludes or default_includes):
            raise PlanError("Mode custom requires --include or --exclude paths")
        includes = _ordered_union(default_includes, explicit_includes)
        if explicit_includes:
            include_only = True

    excludes = _ordered_union(default_excludes, explicit_excludes)

    if include_only and not includes:
        raise PlanError("Include-only mode selected but no include paths found")

    return BackupPlan(
        host=options.host,
        mode=mode,
        include_only=include_only,
        include_paths=tuple(includes),
        exclude_paths=excludes,
        one_file_system=options.one_file_system,
        label=options.label or None,
        output_dir=Path(options.output_dir).expanduser(),
    )
