"""
Checksums, verification and the backup report.

Every finished backup gets a sibling key:value report (<name>.txt) that
records the plan and outcome. Restore reads the checksum back from it.
"""

import hashlib
import logging
import re
import subprocess
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Optional, Tuple

from backupsh.errors import IntegrityError, PipelineError
from .compression import strip_archive_extension
from .encryption import EncryptionSpec
from .plan import BackupPlan
from .pipeline import run_decode_pipeline


logger = logging.getLogger(__name__)

CHECKSUM_FIELD = 'SHA256 Checksum'
CHUNK_SIZE = 1024 * 1024
HEX_DIGEST = re.compile(r'^[0-9a-f]{64}$')

LIST_COMMAND = ['tar', '-tf', '-']

VERIFY_SKIPPED = 'skipped'
VERIFY_PASSED = 'passed'
VERIFY_FAILED = 'failed'


@dataclass(frozen=True)
class PipelineResult:
    """Outcome of a backup run, written once to the report file."""
    archive_path: Path
    size_human: str
    size_bytes: int
    elapsed_seconds: int
    plan: BackupPlan
    encryption: EncryptionSpec = field(default_factory=EncryptionSpec.none)
    checksum: Optional[str] = None
    checksum_skipped_reason: Optional[str] = None
    verify_status: str = VERIFY_SKIPPED
    warnings: Tuple[str, ...] = ()
    config_file: Optional[Path] = None
    finished_at: datetime = field(default_factory=datetime.now)

    @property
    def report_path(self) -> Path:
        return report_path_for(self.archive_path)


def compute_checksum(path) -> str:
    """
    Calculate the SHA-256 of a file using chunked reading.

    Returns:
        Lowercase hexadecimal digest
    """
    digest = hashlib.sha256()
    with open(path, 'rb') as f:
        for chunk in iter(lambda: f.read(CHUNK_SIZE), b''):
            digest.update(chunk)
    return digest.hexdigest()


def report_path_for(archive_path) -> Path:
    """Report file for an archive: same directory, archive suffixes replaced by .txt"""
    archive_path = Path(archive_path)
    return archive_path.with_name(f"{strip_archive_extension(archive_path.name)}.txt")


def legacy_report_path_for(archive_path) -> Path:
    """Report name used by older backups: only the last suffix replaced."""
    archive_path = Path(archive_path)
    return archive_path.with_suffix('.txt')


def report_tmp_path_for(report_path) -> Path:
    """Scratch file the report is written to before being moved into place."""
    report_path = Path(report_path)
    return report_path.with_name(f".{report_path.name}.tmp")


def find_report(archive_path) -> Optional[Path]:
    for candidate in (report_path_for(archive_path), legacy_report_path_for(archive_path)):
        if candidate.is_file():
            return candidate
    return None


def read_expected_checksum(report_path) -> Optional[str]:
    """
    Extract the recorded checksum from a report.

    Returns:
        The hex digest, or None if the report has no usable checksum
        (e.g. it was skipped when the backup ran)
    """
    with open(report_path, 'r', errors='replace') as f:
        for line in f:
            key, sep, value = line.partition(':')
            if sep and key.strip() == CHECKSUM_FIELD:
                value = value.strip().lower()
                if HEX_DIGEST.match(value):
                    return value
                return None
    return None


def verify_archive_checksum(archive_path) -> Optional[bool]:
    """
    Compare an archive against the checksum in its sibling report.

    Returns:
        True if the checksum matched, None if there was nothing to compare

    Raises:
        IntegrityError: If the checksum does not match
    """
    report = find_report(archive_path)
    if report is None:
        logger.debug(f"No report found for {archive_path}; skipping checksum verification")
        return None

    expected = read_expected_checksum(report)
    if expected is None:
        logger.debug(f"{report.name} records no checksum; skipping checksum verification")
        return None

    logger.info("Computing SHA-256 checksum of the backup file. This may take a while for large files...")
    actual = compute_checksum(archive_path)
    if actual != expected:
        raise IntegrityError(
            f"SHA-256 checksum mismatch for {Path(archive_path).name}; "
            f"the backup file may have been tampered with or corrupted"
        )

    logger.info("SHA-256 checksum verification passed")
    return True


def verify_archive_readable(archive_path, passphrase: Optional[str] = None) -> str:
    """
    Decode the whole archive and read its table of contents.

    Nothing is extracted to disk.

    Returns:
        VERIFY_PASSED or VERIFY_FAILED
    """
    logger.info("Verifying archive integrity...")
    try:
        run_decode_pipeline(archive_path, LIST_COMMAND, passphrase=passphrase, stdout=subprocess.DEVNULL)
    except PipelineError as e:
        logger.error(f"Verification failed for {archive_path}: {e}")
        return VERIFY_FAILED
    return VERIFY_PASSED


def _join(paths, empty: str) -> str:
    return ' '.join(paths) if paths else empty


def _yes_no(value: bool) -> str:
    return 'yes' if value else 'no'


def format_plan_summary(plan: BackupPlan, encryption: EncryptionSpec, output_file) -> str:
    """Human readable pre-flight summary of a resolved plan."""
    lines = [
        '',
        'Plan Summary',
        '------------',
        f"Host:          {plan.host}",
        f"Mode:          {plan.mode}",
        f"Include only:  {_yes_no(plan.include_only)}",
        f"Includes:      {_join(plan.include_paths, '(none)')}",
        f"Excludes:      {_join(plan.exclude_paths, '(none)') if not plan.include_only else '(ignored)'}",
        f"One file sys:  {_yes_no(plan.one_file_system)}",
        f"Encryption:    {encryption.kind if encryption.enabled else 'no'}",
    ]
    if encryption.kind == 'recipient':
        lines.append(f"Recipient:     {encryption.recipient}")
    lines.append(f"Output file:   {output_file}")
    lines.append('')
    return '\n'.join(lines)


def format_report(result: PipelineResult) -> str:
    plan = result.plan
    if result.checksum:
        checksum = result.checksum
        checksum_note = f'Re-run sha256sum "{result.archive_path}" after copying to verify integrity.'
    else:
        reason = result.checksum_skipped_reason or 'not computed'
        checksum = f"skipped ({reason})"
        checksum_note = (
            f'Skipped; run: sha256sum "{result.archive_path}" > "{result.archive_path}.sha256" when ready.'
        )

    lines = [
        'BACKUP REPORT',
        f"Host:            {plan.host}",
        f"Hostname:        {plan.remote_name}",
        f"Mode:            {plan.mode}",
        f"Include only:    {_yes_no(plan.include_only)}",
        f"Includes:        {_join(plan.include_paths, '(none)')}",
        f"Excludes:        {_join(plan.exclude_paths, '(none)')}",
        f"One file system: {_yes_no(plan.one_file_system)}",
        f"Encryption:      {result.encryption.kind if result.encryption.enabled else 'no'}",
        f"Recipient:       {result.encryption.recipient or ''}",
        f"Output file:     {result.archive_path}",
        f"File size:       {result.size_human}",
        f"Elapsed seconds: {result.elapsed_seconds}",
        f"{CHECKSUM_FIELD}: {checksum}",
        f"Checksum note:   {checksum_note}",
        f"Verification:    {result.verify_status}",
        f"Warnings:        {'; '.join(result.warnings) if result.warnings else 'none'}",
        f"Config file:     {result.config_file or 'none'}",
        f"Date:            {result.finished_at.strftime('%Y-%m-%d %H:%M:%S')}",
    ]
    return '\n'.join(lines) + '\n'


def write_report(result: PipelineResult) -> Path:
    """
    Write the report next to the archive.

    Returns:
        Path of the report file
    """
    report_path = result.report_path
    tmp_path = report_tmp_path_for(report_path)
    with open(tmp_path, 'w') as f:
        f.write(format_report(result))
    tmp_path.replace(report_path)
    return report_path
