"""
Exception types shared by the backup and restore pipelines.

Configuration errors are raised before any remote or destructive local
action. Everything else is raised once the run has started.
"""


class BackupError(Exception):
    """Base class for every failure reported to the user."""
    pass


class ConfigError(BackupError):
    """Raised when the config file or command-line options are invalid."""
    pass


class PlanError(ConfigError):
    """Raised when include/exclude rules cannot be resolved into a plan."""
    pass


class PreflightError(BackupError):
    """Raised when the remote host cannot be reached or lacks privileges."""
    pass


class PipelineError(BackupError):
    """Raised when a stage of the archive pipeline exits unsuccessfully."""

    def __init__(self, message, statuses=None):
        super().__init__(message)
        self.statuses = statuses or {}


class CompressionError(PipelineError):
    """Raised when the compressor or decompressor fails."""
    pass


class EncryptionError(BackupError):
    """Raised when encryption keys or passphrases are unusable."""
    pass


class IntegrityError(BackupError):
    """Raised when an archive fails checksum or readability verification."""
    pass


class Interrupted(BackupError):
    """Raised when a termination signal arrives while a run is in progress."""

    def __init__(self, signum):
        super().__init__(f"Interrupted by signal {signum}; partial output removed")
        self.signum = signum
