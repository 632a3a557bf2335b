"""
Remote side of a backup run.

- build_archive_command: resolved plan -> tar argument vector
- RemoteSession: SSH connection used to probe privileges and stream the
  archive back to the local pipeline
"""

import logging
import shlex
import socket
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, List, Optional, Tuple

import paramiko
from paramiko import SSHClient, AutoAddPolicy

from backupsh.errors import PipelineError, PreflightError
from .plan import BackupPlan


logger = logging.getLogger(__name__)

ARCHIVER = 'tar'
ELEVATION_WRAPPER = ('sudo', '-n')
ONE_FILE_SYSTEM_FLAG = '--one-file-system'

ROOT_PROBE = 'id -u'
SUDO_PROBE = 'command -v sudo >/dev/null 2>&1 && sudo -n id -u >/dev/null 2>&1'

CHUNK_SIZE = 1024 * 1024
# How long a stdout read may block before stderr is drained again
STDERR_POLL_SECONDS = 1.0


@dataclass(frozen=True)
class RemoteCapability:
    """Privileges of the connecting identity on the remote host."""
    is_root: bool
    has_passwordless_sudo: bool = False

    @property
    def needs_elevation(self) -> bool:
        return not self.is_root and self.has_passwordless_sudo


@dataclass(frozen=True)
class TransportOptions:
    """SSH client settings; unset fields fall back to ~/.ssh/config."""
    port: Optional[int] = None
    identity_file: Optional[str] = None
    ssh_config_file: Optional[str] = '~/.ssh/config'
    connect_timeout: int = 30


def split_host(host: str) -> Tuple[Optional[str], str]:
    """Split a user@host identity into (user, hostname)."""
    if '@' in host:
        user, hostname = host.rsplit('@', 1)
        return user or None, hostname
    return None, host


def build_archive_command(plan: BackupPlan, capability: Optional[RemoteCapability] = None) -> List[str]:
    """
    Build the remote archiver argument vector for a plan.

    The archive is always written to stdout ('-f -').

    Args:
        plan: Resolved backup plan
        capability: Probed remote privileges, or None if the probe was skipped

    Returns:
        Argument vector, one element per remote argument
    """
    argv = []
    if capability is not None and capability.needs_elevation:
        argv.extend(ELEVATION_WRAPPER)

    argv.append(ARCHIVER)
    if plan.one_file_system:
        argv.append(ONE_FILE_SYSTEM_FLAG)

    if plan.include_only:
        argv.extend(['-cf', '-'])
        argv.extend(plan.include_paths)
    else:
        argv.extend(f"--exclude={pattern}" for pattern in plan.exclude_paths)
        argv.extend(['-cf', '-', '/'])

    return argv


def to_command_line(argv: List[str]) -> str:
    """Quote an argument vector once for the remote login shell."""
    return shlex.join(argv)


class RemoteSession:
    """
    SSH session to the backup target.

    Connects with the local SSH config, agent and keys; streams remote
    command output without buffering it locally.
    """

    def __init__(self, host: str, transport: Optional[TransportOptions] = None):
        """
        Initialize remote session.

        Args:
            host: user@hostname identity of the remote host
            transport: Optional SSH client settings
        """
        self.host = host
        self.transport = transport or TransportOptions()
        self.ssh_client = None
        self.stderr_lines = []

    def _connect_kwargs(self) -> dict:
        user, hostname = split_host(self.host)

        connect_kwargs = {
            'hostname': hostname,
            'timeout': self.transport.connect_timeout,
        }

        # Fill gaps from ssh_config (HostName, Port, User, IdentityFile)
        config_path = self.transport.ssh_config_file
        if config_path and Path(config_path).expanduser().exists():
            ssh_config = paramiko.SSHConfig.from_path(str(Path(config_path).expanduser()))
            entry = ssh_config.lookup(hostname)
            connect_kwargs['hostname'] = entry.get('hostname', hostname)
            if 'port' in entry:
                connect_kwargs['port'] = int(entry['port'])
            if user is None and 'user' in entry:
                user = entry['user']
            if 'identityfile' in entry:
                connect_kwargs['key_filename'] = [
                    str(Path(path).expanduser()) for path in entry['identityfile']
                ]

        if self.transport.port is not None:
            connect_kwargs['port'] = self.transport.port
        if self.transport.identity_file:
            key_path = Path(self.transport.identity_file).expanduser()
            if not key_path.exists():
                raise PreflightError(f"Private key not found: {self.transport.identity_file}")
            connect_kwargs['key_filename'] = str(key_path)
        if user:
            connect_kwargs['username'] = user

        return connect_kwargs

    def connect(self):
        """
        Establish SSH connection.

        Raises:
            PreflightError: If connection or authentication fails
        """
        connect_kwargs = self._connect_kwargs()
        try:
            self.ssh_client = SSHClient()
            self.ssh_client.load_system_host_keys()
            self.ssh_client.set_missing_host_key_policy(AutoAddPolicy())
            self.ssh_client.connect(**connect_kwargs)
        except paramiko.AuthenticationException as e:
            raise PreflightError(f"SSH authentication failed for {self.host}: {e}") from e
        except paramiko.SSHException as e:
            raise PreflightError(f"SSH connection to {self.host} failed: {e}") from e
        except OSError as e:
            raise PreflightError(f"Failed to connect to {self.host}: {e}") from e

        logger.debug(f"Connected to {connect_kwargs['hostname']}")

    def run(self, command: str) -> Tuple[int, str]:
        """
        Run a short command and collect its output.

        Args:
            command: Command line for the remote shell

        Returns:
            Tuple of (exit status, stdout text)
        """
        try:
            stdin, stdout, stderr = self.ssh_client.exec_command(command)
            stdin.close()
            output = stdout.read().decode(errors='replace')
            status = stdout.channel.recv_exit_status()
        except (paramiko.SSHException, OSError) as e:
            raise PreflightError(f"Failed to run {command!r} on {self.host}: {e}") from e
        return status, output.strip()

    def probe_capability(self) -> RemoteCapability:
        """
        Determine whether the archiver can run with root privileges.

        Returns:
            RemoteCapability of the connecting identity

        Raises:
            PreflightError: If the identity is neither root nor has passwordless sudo
        """
        status, output = self.run(ROOT_PROBE)
        if status == 0 and output == '0':
            logger.info("Connected as root on remote host")
            return RemoteCapability(is_root=True)

        status, _ = self.run(SUDO_PROBE)
        if status == 0:
            logger.info("Remote archiver will run through passwordless sudo")
            return RemoteCapability(is_root=False, has_passwordless_sudo=True)

        raise PreflightError(f"Need root or passwordless sudo on {self.host}")

    def stream(self, argv: List[str], sink: BinaryIO) -> int:
        """
        Run a remote command and copy its stdout into sink.

        Args:
            argv: Remote argument vector (quoted here, once)
            sink: Writable binary stream receiving the command output

        Returns:
            Remote exit status (-1 if the server sent none)
        """
        command = to_command_line(argv)
        logger.debug(f"Remote command: {command}")

        transferred = 0
        pending = b''
        try:
            stdin, stdout, stderr = self.ssh_client.exec_command(command)
            stdin.close()
            channel = stdout.channel
            channel.settimeout(STDERR_POLL_SECONDS)

            while True:
                # A full stderr window stalls stdout too, so drain it before every read
                while channel.recv_stderr_ready():
                    pending = self._collect_stderr(pending + channel.recv_stderr(CHUNK_SIZE))

                try:
                    chunk = channel.recv(CHUNK_SIZE)
                except socket.timeout:
                    continue
                if not chunk:
                    break
                sink.write(chunk)
                transferred += len(chunk)

            status = channel.recv_exit_status()
            self._collect_stderr(pending + stderr.read(), final=True)
        except BrokenPipeError:
            raise
        except (paramiko.SSHException, OSError) as e:
            raise PipelineError(f"Lost connection to {self.host} after {transferred} bytes: {e}") from e
        logger.debug(f"Received {transferred} bytes from remote archiver")
        return status

    def _collect_stderr(self, data: bytes, final: bool = False) -> bytes:
        *lines, rest = data.split(b'\n')
        if final and rest:
            lines.append(rest)
            rest = b''
        for line in lines:
            text = line.decode(errors='replace').strip()
            if text:
                self.stderr_lines.append(text)
                logger.warning(f"{ARCHIVER}: {text}")
        return rest

    def close(self):
        """Close SSH connection."""
        if self.ssh_client:
            try:
                self.ssh_client.close()
            finally:
                self.ssh_client = None

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False
