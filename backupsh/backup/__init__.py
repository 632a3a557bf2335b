"""
Backup module for backupsh.

This module handles the core backup functionality including:
- Path-rule resolution (plan)
- Remote archive command and SSH transport
- Compression and encryption stages
- Checksums and reports
- Backup and restore orchestration
"""

from .executor import BackupExecutor
from .restore import RestoreExecutor, RestoreOptions
from .plan import BackupOptions, BackupPlan, PathArg, resolve_plan
from .remote import RemoteCapability, RemoteSession, TransportOptions, build_archive_command
from .encryption import EncryptionSpec, resolve_encryption
from .integrity import PipelineResult

__all__ = [
    'BackupExecutor',
    'RestoreExecutor',
    'RestoreOptions',
    'BackupOptions',
    'BackupPlan',
    'PathArg',
    'resolve_plan',
    'RemoteCapability',
    'RemoteSession',
    'TransportOptions',
    'build_archive_command',
    'EncryptionSpec',
    'resolve_encryption',
    'PipelineResult',
]
