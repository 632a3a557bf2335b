"""
Backup executor - orchestrates the complete backup workflow.

Workflow:
1. Local preflight (output directory, encryption key)
2. Connect and probe remote privileges
3. Stream remote tar through zstd into the archive file
4. Encrypt (if configured)
5. Verify (if configured)
6. Checksum and write the report
"""

import logging
import os
import time
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional

from backupsh.errors import CompressionError, ConfigError, IntegrityError, PipelineError
from backupsh.utils.artifacts import PartialArtifacts
from .compression import generate_archive_filename, get_archive_size, human_size, start_compressor
from .encryption import EncryptionSpec, encrypt_file, encrypted_path_for, ensure_recipient_key
from .integrity import (
    PipelineResult,
    VERIFY_FAILED,
    VERIFY_SKIPPED,
    compute_checksum,
    format_plan_summary,
    report_tmp_path_for,
    verify_archive_readable,
    write_report,
)
from .pipeline import ARCHIVER_FILES_CHANGED
from .plan import BackupPlan
from .remote import ARCHIVER, RemoteCapability, RemoteSession, TransportOptions, build_archive_command


logger = logging.getLogger(__name__)


class BackupExecutor:
    """
    Orchestrates the complete backup workflow for a plan.
    """

    def __init__(
        self,
        plan: BackupPlan,
        encryption: EncryptionSpec = None,
        transport: Optional[TransportOptions] = None,
        skip_checksum: bool = False,
        continue_on_change: bool = False,
        skip_root_check: bool = False,
        verify: bool = False,
        config_file: Optional[Path] = None,
        session_factory: Optional[Callable[..., RemoteSession]] = None,
        output=print,
    ):
        """
        Initialize backup executor.

        Args:
            plan: Resolved backup plan
            encryption: Encryption variant (defaults to none)
            transport: SSH client settings
            skip_checksum: Do not compute a SHA-256 of the archive
            continue_on_change: Accept the archiver's "files changed" exit code
            skip_root_check: Do not probe remote privileges
            verify: Decode the finished archive and read its table of contents
            config_file: Config file that supplied defaults, for the report
            session_factory: Callable returning a RemoteSession (default: RemoteSession)
            output: Callable used to print the plan summary
        """
        self.plan = plan
        self.encryption = encryption or EncryptionSpec.none()
        self.transport = transport
        self.skip_checksum = skip_checksum
        self.continue_on_change = continue_on_change
        self.skip_root_check = skip_root_check
        self.verify = verify
        self.config_file = config_file
        self.session_factory = session_factory or RemoteSession
        self.output = output

        self.archive_path = Path(plan.output_dir) / generate_archive_filename(plan.remote_name, plan.label)
        self.capability: Optional[RemoteCapability] = None
        self.warnings: List[str] = []

    def preview(self) -> str:
        """Resolved plan text; touches neither the network nor the disk."""
        return format_plan_summary(self.plan, self.encryption, self.archive_path)

    def execute(self) -> PipelineResult:
        """
        Execute the backup.

        Returns:
            PipelineResult describing the written archive

        Raises:
            BackupError: Any configuration, preflight, pipeline or integrity failure
        """
        self._check_local_preconditions()

        with self.session_factory(self.plan.host, self.transport) as session:
            if self.skip_root_check:
                logger.info("Skipping remote root check; archiver runs as the connecting user")
            else:
                self.capability = session.probe_capability()

            argv = build_archive_command(self.plan, self.capability)
            self.output(self.preview())

            with PartialArtifacts() as artifacts:
                start = time.monotonic()
                artifacts.track(self.archive_path)
                self._stream_archive(session, argv)

                if self.encryption.enabled:
                    # gpg may be killed mid-write; its output must already be owned
                    encrypted_path = artifacts.track(encrypted_path_for(self.archive_path))
                    encrypt_file(self.archive_path, self.encryption)
                    artifacts.forget(self.archive_path)
                    self.archive_path = encrypted_path

                result = self._finish(start)
                artifacts.track(report_tmp_path_for(result.report_path))
                artifacts.track(result.report_path)
                write_report(result)
                artifacts.commit()

        logger.info(f"Backup completed: {result.archive_path}")
        logger.info(f"Report: {result.report_path}")

        if result.verify_status == VERIFY_FAILED:
            raise IntegrityError(f"Verification failed for {result.archive_path}")
        return result

    def _check_local_preconditions(self):
        """
        Checks that must pass before any remote connection is opened.

        Raises:
            ConfigError: If the output directory is unusable
            EncryptionError: If the recipient key is missing
        """
        output_dir = Path(self.plan.output_dir)
        try:
            output_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ConfigError(f"Cannot create output directory {output_dir}: {e}") from e
        if not os.access(output_dir, os.W_OK | os.X_OK):
            raise ConfigError(f"Output directory {output_dir} is not writable")

        if self.encryption.kind == 'recipient':
            ensure_recipient_key(self.encryption.recipient)

    def _stream_archive(self, session: RemoteSession, argv: List[str]):
        """
        Pump the remote archive through the compressor into the archive file.

        Raises:
            PipelineError: If the archiver fails (or reports changed files
                without continue_on_change)
            CompressionError: If the compressor fails
        """
        logger.info(f"Streaming archive from {self.plan.host} to {self.archive_path}")

        broken_pipe = False
        with open(self.archive_path, 'wb') as output:
            compressor = start_compressor(output)
            try:
                archiver_status = session.stream(argv, compressor.stdin)
            except BrokenPipeError:
                broken_pipe = True
                archiver_status = None
            finally:
                try:
                    compressor.stdin.close()
                except BrokenPipeError:
                    broken_pipe = True
                if broken_pipe:
                    compressor.kill()
                compressor.wait()

        if archiver_status is not None:
            self._check_archiver_status(archiver_status)

        if compressor.returncode != 0 or broken_pipe:
            raise CompressionError(
                f"Compressor exited with status {compressor.returncode}",
                statuses={'compressor': compressor.returncode},
            )

    def _check_archiver_status(self, status: int):
        if status == 0:
            return

        if status == ARCHIVER_FILES_CHANGED:
            message = f"{ARCHIVER} reported files changed while reading (exit {status})"
            logger.warning(message)
            if not self.continue_on_change:
                raise PipelineError(
                    f"Aborting due to {ARCHIVER} exit {status}; use --continue-on-change to accept changed files",
                    statuses={ARCHIVER: status},
                )
            self.warnings.append(message)
            return

        raise PipelineError(f"{ARCHIVER} exited with status {status}", statuses={ARCHIVER: status})

    def _finish(self, start: float) -> PipelineResult:
        """Verification, size and checksum of the final artifact."""
        verify_status = VERIFY_SKIPPED
        if self.verify:
            verify_status = verify_archive_readable(self.archive_path, self.encryption.passphrase)

        size_bytes = get_archive_size(self.archive_path)

        checksum = None
        skipped_reason = None
        if self.skip_checksum:
            skipped_reason = '--skip-checksum'
            logger.warning("Checksum skipped; restore will not be able to detect tampering")
        else:
            checksum = compute_checksum(self.archive_path)

        return PipelineResult(
            archive_path=self.archive_path,
            size_human=human_size(size_bytes),
            size_bytes=size_bytes,
            elapsed_seconds=int(time.monotonic() - start),
            plan=self.plan,
            encryption=self.encryption,
            checksum=checksum,
            checksum_skipped_reason=skipped_reason,
            verify_status=verify_status,
            warnings=tuple(self.warnings),
            config_file=self.config_file,
            finished_at=datetime.now(),
        )
