"""
Subprocess pipelines for reading archives back.

The decode path is: [gpg --decrypt] | zstd -d | consumer, where the consumer
is tar extracting or listing. Stages are joined with OS pipes; the parent
keeps no copy of intermediate pipe ends so a failing stage is seen by its
neighbours as EOF or SIGPIPE.
"""

import logging
import subprocess
from typing import Dict, List, Optional

from backupsh.errors import PipelineError
from . import compression
from .encryption import decrypt_command, is_encrypted


logger = logging.getLogger(__name__)

# Archiver exit code for "some files changed while being read"
ARCHIVER_FILES_CHANGED = 1


class Stage:
    """A named process in a pipeline."""

    def __init__(self, name: str, process: subprocess.Popen):
        self.name = name
        self.process = process

    @property
    def returncode(self) -> Optional[int]:
        return self.process.returncode

    def wait(self) -> int:
        return self.process.wait()

    def kill(self):
        if self.process.poll() is None:
            self.process.kill()
            self.process.wait()


def stage_statuses(stages: List[Stage]) -> Dict[str, int]:
    return {stage.name: stage.returncode for stage in stages}


def check_stages(stages: List[Stage]):
    """
    Raise if any finished stage exited non-zero.

    Raises:
        PipelineError: Naming every failed stage and its exit status
    """
    failed = [stage for stage in stages if stage.returncode != 0]
    if failed:
        details = ', '.join(f"{stage.name} exited with status {stage.returncode}" for stage in failed)
        raise PipelineError(f"Pipeline failed: {details}", statuses=stage_statuses(stages))


def run_decode_pipeline(archive, consumer: List[str], passphrase: Optional[str] = None, stdout=None) -> Dict[str, int]:
    """
    Decrypt (if needed), decompress and feed an archive to a consumer.

    Args:
        archive: Path of the .tar.zst or .tar.zst.gpg file
        consumer: Argument vector reading the tar stream on stdin
        passphrase: Passphrase for symmetric archives, if known
        stdout: Where the consumer's stdout goes (inherited if None)

    Returns:
        Mapping of stage name to exit status

    Raises:
        PipelineError: If any stage fails or cannot be started
    """
    stages = []
    try:
        if is_encrypted(archive):
            command, secret = decrypt_command(archive, passphrase)
            gpg = _start('gpg', command, stdin=subprocess.PIPE if secret is not None else None)
            stages.append(Stage('gpg', gpg))
            if secret is not None:
                _send_secret(gpg, secret)
            upstream = gpg.stdout
        else:
            upstream = open(archive, 'rb')

        try:
            decompressor = compression.start_decompressor(upstream)
        finally:
            upstream.close()
        stages.append(Stage(compression.DECOMPRESS_COMMAND[0], decompressor))

        try:
            consumer_process = _start(_stage_name(consumer), consumer,
                                      stdin=decompressor.stdout, stdout=stdout, stdout_pipe=False)
        finally:
            decompressor.stdout.close()
        stages.append(Stage(_stage_name(consumer), consumer_process))

        for stage in reversed(stages):
            stage.wait()
    finally:
        for stage in stages:
            stage.kill()

    check_stages(stages)
    return stage_statuses(stages)


def _send_secret(process: subprocess.Popen, secret: bytes):
    """Feed the passphrase; a gpg that exits first is reported by its status."""
    try:
        process.stdin.write(secret)
        process.stdin.close()
    except BrokenPipeError:
        logger.debug("gpg closed its input before reading the passphrase")
        try:
            process.stdin.close()
        except BrokenPipeError:
            # unflushed passphrase bytes; the descriptor is closed regardless
            pass


def _stage_name(command: List[str]) -> str:
    for token in command:
        if token not in ('sudo', '-n'):
            return token
    return command[0]


def _start(name, command, stdin=None, stdout=None, stdout_pipe=True) -> subprocess.Popen:
    logger.debug(f"Starting {' '.join(command)}")
    try:
        return subprocess.Popen(
            command,
            stdin=stdin,
            stdout=subprocess.PIPE if stdout_pipe else stdout,
        )
    except OSError as e:
        raise PipelineError(f"Failed to start {name}: {e}") from e
