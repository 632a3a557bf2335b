"""
Shared pytest fixtures for backupsh tests.

This module provides fixtures for:
- Sample directory trees and in-memory tar streams
- A fake SSH session standing in for RemoteSession
- Swapping zstd for `cat` so pipelines run without the zstd binary
- An isolated GnuPG home
- Resolved backup plans
"""

import io
import tarfile
from pathlib import Path

import pytest

from backupsh.backup import compression
from backupsh.backup.plan import BackupPlan
from backupsh.backup.remote import RemoteCapability


def make_tar_bytes(root: Path) -> bytes:
    """Tar a directory tree in memory, members named relative to root's parent."""
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode='w') as tar:
        tar.add(root, arcname=root.name)
    return buffer.getvalue()


class FakeSession:
    """
    Stand-in for RemoteSession.

    stream() writes a canned payload into the sink and returns a canned exit
    status; every call is recorded.
    """

    def __init__(self, host, transport=None, payload=b'', status=0,
                 capability=None, stream_hook=None):
        self.host = host
        self.transport = transport
        self.payload = payload
        self.status = status
        self.capability = capability or RemoteCapability(is_root=True)
        self.stream_hook = stream_hook
        self.streamed = []
        self.probed = False
        self.closed = False

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.closed = True
        return False

    def probe_capability(self):
        self.probed = True
        return self.capability

    def stream(self, argv, sink):
        self.streamed.append(list(argv))
        sink.write(self.payload)
        if self.stream_hook:
            self.stream_hook()
        return self.status


@pytest.fixture
def sample_tree(tmp_path):
    """
    Create a small directory tree to archive.

    Creates:
    - data/file1.txt
    - data/file2.log
    - data/nested/file3.txt
    """
    root = tmp_path / 'source' / 'data'
    (root / 'nested').mkdir(parents=True)
    (root / 'file1.txt').write_text('Content 1')
    (root / 'file2.log').write_text('Log content')
    (root / 'nested' / 'file3.txt').write_text('Nested content')
    return root


@pytest.fixture
def tar_payload(sample_tree):
    """Uncompressed tar stream of sample_tree."""
    return make_tar_bytes(sample_tree)


@pytest.fixture
def cat_codec(monkeypatch):
    """
    Replace zstd with cat in both directions.

    Archives are then plain tar streams, which keeps the pipeline tests
    independent of the zstd binary.
    """
    monkeypatch.setattr(compression, 'COMPRESS_COMMAND', ['cat'])
    monkeypatch.setattr(compression, 'DECOMPRESS_COMMAND', ['cat'])


@pytest.fixture
def session_factory(tar_payload):
    """
    Build FakeSession factories for BackupExecutor.

    Usage: executor = BackupExecutor(plan, session_factory=session_factory(status=1))
    Sessions created by a factory are kept in its `sessions` list.
    """
    def factory(**kwargs):
        kwargs.setdefault('payload', tar_payload)
        sessions = []

        def create(host, transport=None):
            session = FakeSession(host, transport, **kwargs)
            sessions.append(session)
            return session

        create.sessions = sessions
        return create

    return factory


@pytest.fixture
def output_dir(tmp_path):
    return tmp_path / 'backups'


@pytest.fixture
def full_plan(output_dir):
    return BackupPlan(
        host='root@server.example.com',
        mode='full',
        include_only=False,
        include_paths=(),
        exclude_paths=('/dev/*', '/proc/*'),
        output_dir=output_dir,
    )


@pytest.fixture
def include_plan(output_dir):
    return BackupPlan(
        host='admin@server.example.com',
        mode='custom',
        include_only=True,
        include_paths=('/etc', '/srv/my files'),
        exclude_paths=('/dev/*',),
        one_file_system=True,
        label='nightly',
        output_dir=output_dir,
    )


@pytest.fixture
def gnupg_home(tmp_path, monkeypatch):
    """Private GNUPGHOME so tests never touch the user's keyring."""
    home = tmp_path / 'gnupg'
    home.mkdir(mode=0o700)
    monkeypatch.setenv('GNUPGHOME', str(home))
    return home


@pytest.fixture
def isolated_home(tmp_path, monkeypatch):
    """Point HOME/XDG_CONFIG_HOME at an empty directory so no user config is read."""
    home = tmp_path / 'home'
    home.mkdir()
    monkeypatch.setenv('HOME', str(home))
    monkeypatch.delenv('XDG_CONFIG_HOME', raising=False)
    monkeypatch.delenv('BACKUPSH_CONFIG', raising=False)
    monkeypatch.delenv('BACKUPSH_COMPAT', raising=False)
    monkeypatch.delenv('BACKUPSH_LOG_FILE', raising=False)
    return home


