"""
Unit tests for checksums and reports (backupsh/backup/integrity.py).
"""

import hashlib
from datetime import datetime

import pytest

from backupsh.backup.encryption import EncryptionSpec
from backupsh.backup.integrity import (
    VERIFY_FAILED,
    VERIFY_PASSED,
    PipelineResult,
    compute_checksum,
    find_report,
    format_plan_summary,
    format_report,
    legacy_report_path_for,
    read_expected_checksum,
    report_path_for,
    report_tmp_path_for,
    verify_archive_checksum,
    verify_archive_readable,
    write_report,
)
from backupsh.errors import IntegrityError


def make_result(archive_path, plan, **kwargs):
    kwargs.setdefault('size_human', '1.0K')
    kwargs.setdefault('size_bytes', 1024)
    kwargs.setdefault('elapsed_seconds', 3)
    kwargs.setdefault('finished_at', datetime(2024, 3, 5, 14, 30, 45))
    return PipelineResult(archive_path=archive_path, plan=plan, **kwargs)


@pytest.fixture
def archive(tmp_path, tar_payload):
    path = tmp_path / 'server-20240305-143045.tar.zst'
    path.write_bytes(tar_payload)
    return path


class TestComputeChecksum:
    """Test compute_checksum function."""

    def test_matches_hashlib(self, archive):
        assert compute_checksum(archive) == hashlib.sha256(archive.read_bytes()).hexdigest()

    def test_deterministic(self, archive):
        assert compute_checksum(archive) == compute_checksum(archive)

    def test_single_byte_flip_changes_digest(self, archive):
        before = compute_checksum(archive)
        data = bytearray(archive.read_bytes())
        data[len(data) // 2] ^= 0x01
        archive.write_bytes(bytes(data))

        assert compute_checksum(archive) != before

    def test_lowercase_hex(self, archive):
        digest = compute_checksum(archive)

        assert len(digest) == 64
        assert digest == digest.lower()


class TestReportPaths:
    """Test report naming."""

    @pytest.mark.parametrize("archive_name,report_name", [
        ("host-20240101-120000.tar.zst", "host-20240101-120000.txt"),
        ("host-20240101-120000.tar.zst.gpg", "host-20240101-120000.txt"),
        ("10.0.0.5-20240101-120000-nightly.tar.zst", "10.0.0.5-20240101-120000-nightly.txt"),
    ])
    def test_report_path_for(self, tmp_path, archive_name, report_name):
        assert report_path_for(tmp_path / archive_name) == tmp_path / report_name

    def test_legacy_report_path(self, tmp_path):
        assert legacy_report_path_for(tmp_path / 'host.tar.zst') == tmp_path / 'host.tar.txt'

    def test_report_scratch_path(self, tmp_path):
        assert report_tmp_path_for(tmp_path / 'host.txt') == tmp_path / '.host.txt.tmp'

    def test_find_report_prefers_current_name(self, archive):
        report_path_for(archive).write_text('current')
        legacy_report_path_for(archive).write_text('legacy')

        assert find_report(archive) == report_path_for(archive)

    def test_find_report_falls_back_to_legacy_name(self, archive):
        legacy_report_path_for(archive).write_text('legacy')

        assert find_report(archive) == legacy_report_path_for(archive)

    def test_find_report_none(self, archive):
        assert find_report(archive) is None


class TestReport:
    """Test report formatting and parsing."""

    def test_write_report_records_checksum(self, archive, include_plan):
        checksum = compute_checksum(archive)
        result = make_result(archive, include_plan, checksum=checksum)

        report = write_report(result)

        assert report == result.report_path
        assert report.name == 'server-20240305-143045.txt'
        assert read_expected_checksum(report) == checksum
        assert not list(archive.parent.glob('.*.tmp'))

    def test_report_fields(self, archive, include_plan):
        result = make_result(
            archive, include_plan,
            checksum='a' * 64,
            encryption=EncryptionSpec.for_recipient('backup@example.com'),
            warnings=('tar reported files changed while reading (exit 1)',),
            verify_status=VERIFY_PASSED,
        )

        text = format_report(result)

        assert text.startswith('BACKUP REPORT\n')
        assert 'Host:            admin@server.example.com' in text
        assert 'Hostname:        server.example.com' in text
        assert 'Mode:            custom' in text
        assert 'Include only:    yes' in text
        assert 'Includes:        /etc /srv/my files' in text
        assert 'One file system: yes' in text
        assert 'Encryption:      recipient' in text
        assert 'Recipient:       backup@example.com' in text
        assert f"Output file:     {archive}" in text
        assert 'File size:       1.0K' in text
        assert 'Elapsed seconds: 3' in text
        assert f"SHA256 Checksum: {'a' * 64}" in text
        assert 'Verification:    passed' in text
        assert 'Warnings:        tar reported files changed' in text
        assert 'Date:            2024-03-05 14:30:45' in text

    def test_report_never_contains_passphrase(self, archive, full_plan):
        result = make_result(archive, full_plan, encryption=EncryptionSpec.for_passphrase('hunter2'))

        assert 'hunter2' not in format_report(result)

    def test_skipped_checksum(self, archive, full_plan):
        result = make_result(archive, full_plan, checksum_skipped_reason='--skip-checksum')

        report = write_report(result)

        assert 'SHA256 Checksum: skipped (--skip-checksum)' in report.read_text()
        assert read_expected_checksum(report) is None

    def test_read_expected_checksum_rejects_garbage(self, tmp_path):
        report = tmp_path / 'host.txt'
        report.write_text('BACKUP REPORT\nSHA256 Checksum: not-a-digest\n')

        assert read_expected_checksum(report) is None

    def test_read_expected_checksum_uppercase(self, tmp_path):
        report = tmp_path / 'host.txt'
        report.write_text(f"SHA256 Checksum: {'AB' * 32}\n")

        assert read_expected_checksum(report) == 'ab' * 32


class TestVerifyArchiveChecksum:
    """Test verification against the sibling report."""

    def test_match(self, archive, full_plan):
        write_report(make_result(archive, full_plan, checksum=compute_checksum(archive)))

        assert verify_archive_checksum(archive) is True

    def test_mismatch(self, archive, full_plan):
        write_report(make_result(archive, full_plan, checksum=compute_checksum(archive)))
        with open(archive, 'ab') as f:
            f.write(b'tampered')

        with pytest.raises(IntegrityError, match="checksum mismatch"):
            verify_archive_checksum(archive)

    def test_no_report(self, archive):
        assert verify_archive_checksum(archive) is None

    def test_report_without_checksum(self, archive, full_plan):
        write_report(make_result(archive, full_plan, checksum_skipped_reason='--skip-checksum'))

        assert verify_archive_checksum(archive) is None

    def test_legacy_report(self, archive):
        legacy_report_path_for(archive).write_text(f"SHA256 Checksum: {'0' * 64}\n")

        with pytest.raises(IntegrityError):
            verify_archive_checksum(archive)


class TestVerifyArchiveReadable:
    """Test decode-and-list verification."""

    def test_readable_archive(self, archive, cat_codec):
        assert verify_archive_readable(archive) == VERIFY_PASSED

    def test_truncated_archive(self, archive, cat_codec):
        data = archive.read_bytes()
        archive.write_bytes(data[:700])

        assert verify_archive_readable(archive) == VERIFY_FAILED

    def test_garbage(self, tmp_path, cat_codec):
        path = tmp_path / 'garbage.tar.zst'
        path.write_bytes(b'\xff' * 4096)

        assert verify_archive_readable(path) == VERIFY_FAILED


class TestPlanSummary:
    """Test the pre-flight summary."""

    def test_include_only_summary(self, include_plan):
        text = format_plan_summary(include_plan, EncryptionSpec.none(), '/backups/x.tar.zst')

        assert 'Include only:  yes' in text
        assert 'Excludes:      (ignored)' in text
        assert 'Encryption:    no' in text
        assert 'Output file:   /backups/x.tar.zst' in text

    def test_exclude_summary_with_recipient(self, full_plan):
        text = format_plan_summary(full_plan, EncryptionSpec.for_recipient('KEY'), 'x')

        assert 'Excludes:      /dev/* /proc/*' in text
        assert 'Recipient:     KEY' in text
