"""
Restore executor - reverses the backup pipeline.

Workflow:
1. Verify the archive checksum against its report (if one exists)
2. Decrypt (.gpg archives only)
3. Decompress
4. Extract into the destination, or list the contents
"""

import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from backupsh.errors import ConfigError
from .integrity import verify_archive_checksum
from .pipeline import run_decode_pipeline
from .encryption import is_encrypted
from .remote import ARCHIVER


logger = logging.getLogger(__name__)

LOCAL_ELEVATION = ('sudo',)


@dataclass(frozen=True)
class RestoreOptions:
    """Parsed restore options."""
    archive: Path
    destination: Path = Path('.')
    subdirectory: bool = True
    elevate: bool = False
    list_only: bool = False
    members: Tuple[str, ...] = ()
    passphrase: Optional[str] = None


def archive_base_name(archive) -> str:
    """Archive file name up to its first dot (host-20240101-120000)."""
    return Path(archive).name.split('.', 1)[0]


class RestoreExecutor:
    """
    Restores or lists a backup archive.
    """

    def __init__(self, options: RestoreOptions):
        """
        Initialize restore executor.

        Args:
            options: Parsed restore options
        """
        self.options = options
        self.archive = Path(options.archive)

    @property
    def destination(self) -> Path:
        destination = Path(self.options.destination).expanduser()
        if self.options.subdirectory:
            destination = destination / archive_base_name(self.archive)
        return destination

    def consumer_command(self) -> List[str]:
        """tar invocation that lists or extracts the decoded stream."""
        members = [member.lstrip('/') for member in self.options.members]
        if self.options.list_only:
            return [ARCHIVER, '-tf', '-'] + members

        command = []
        if self.options.elevate:
            command.extend(LOCAL_ELEVATION)
        command.extend([ARCHIVER, '-xf', '-', '-C', str(self.destination)])
        command.extend(members)
        return command

    def mkdir_command(self) -> List[str]:
        """Elevated creation of the destination, for targets the caller cannot write."""
        return list(LOCAL_ELEVATION) + ['mkdir', '-p', str(self.destination)]

    def _create_destination(self, destination: Path):
        if not self.options.elevate:
            try:
                destination.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise ConfigError(f"Cannot create destination {destination}: {e}") from e
            return

        try:
            result = subprocess.run(self.mkdir_command(), stderr=subprocess.PIPE)
        except OSError as e:
            raise ConfigError(f"Cannot create destination {destination}: {e}") from e
        if result.returncode != 0:
            error = result.stderr.decode(errors='replace').strip()
            raise ConfigError(f"Cannot create destination {destination}: {error or result.returncode}")

    def execute(self) -> Dict[str, int]:
        """
        Execute the restore.

        Returns:
            Mapping of pipeline stage name to exit status

        Raises:
            ConfigError: If the archive or destination is unusable
            IntegrityError: If the checksum does not match the report
            PipelineError: If decryption, decompression or extraction fails
        """
        if not self.archive.is_file():
            raise ConfigError(f"Backup file {self.archive} not found")

        verify_archive_checksum(self.archive)

        if self.options.list_only:
            return run_decode_pipeline(self.archive, self.consumer_command(), passphrase=self.options.passphrase)

        destination = self.destination
        self._create_destination(destination)

        if is_encrypted(self.archive):
            logger.info("Backup file is encrypted. Decrypting...")

        statuses = run_decode_pipeline(self.archive, self.consumer_command(), passphrase=self.options.passphrase)
        logger.info(f"Backup successfully restored to {destination}")
        return statuses
