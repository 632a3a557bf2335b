"""
GnuPG envelope for finished archives.

Supports:
- recipient: public-key encryption to a key in the local keyring
- passphrase: symmetric encryption with a shared secret
"""

import getpass
import logging
import os
import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional, Tuple

from backupsh.errors import EncryptionError


logger = logging.getLogger(__name__)

GPG = 'gpg'
ENCRYPTED_SUFFIX = '.gpg'
PROMPT_ATTEMPTS = 3


@dataclass(frozen=True)
class EncryptionSpec:
    """Selected encryption variant: none, recipient or passphrase."""
    kind: str = 'none'
    recipient: Optional[str] = None
    passphrase: Optional[str] = None

    @classmethod
    def none(cls) -> 'EncryptionSpec':
        return cls()

    @classmethod
    def for_recipient(cls, recipient: str) -> 'EncryptionSpec':
        return cls(kind='recipient', recipient=recipient)

    @classmethod
    def for_passphrase(cls, passphrase: str) -> 'EncryptionSpec':
        return cls(kind='passphrase', passphrase=passphrase)

    @property
    def enabled(self) -> bool:
        return self.kind != 'none'

    def __repr__(self):
        # Never leak the passphrase into logs or tracebacks
        return f"EncryptionSpec(kind={self.kind!r}, recipient={self.recipient!r})"


def is_encrypted(path) -> bool:
    return str(path).endswith(ENCRYPTED_SUFFIX)


def key_exists(recipient: str) -> bool:
    """Check whether the local keyring holds a public key for recipient."""
    try:
        result = subprocess.run(
            [GPG, '--batch', '--list-keys', recipient],
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
        )
    except OSError as e:
        raise EncryptionError(f"Failed to run {GPG}: {e}") from e
    return result.returncode == 0


def ensure_recipient_key(recipient: str):
    """
    Fail fast if the recipient's public key is missing.

    Raises:
        EncryptionError: If the key is not in the local keyring
    """
    if not key_exists(recipient):
        raise EncryptionError(f"Recipient key {recipient} not found")


def strip_line_terminator(value: str) -> str:
    if value.endswith('\r\n'):
        return value[:-2]
    if value.endswith('\n'):
        return value[:-1]
    return value


def read_passphrase_file(path: str) -> str:
    """
    Read a passphrase from a file, or from stdin when path is '-'.

    Only the first line is used; its line terminator is stripped so the
    result matches an interactively typed passphrase.

    Raises:
        EncryptionError: If the file is missing or empty
    """
    if path == '-':
        line = sys.stdin.readline()
    else:
        try:
            with open(path, 'r', newline='') as f:
                line = f.readline()
        except FileNotFoundError:
            raise EncryptionError(f"Passphrase file {path} not found")
        except OSError as e:
            raise EncryptionError(f"Failed to read passphrase file {path}: {e}") from e

    passphrase = strip_line_terminator(line)
    if not passphrase:
        raise EncryptionError(f"Passphrase file {path} is empty")
    return passphrase


def prompt_passphrase(prompt: Callable[[str], str] = getpass.getpass, attempts: int = PROMPT_ATTEMPTS) -> str:
    """
    Ask for a passphrase twice without echo.

    Args:
        prompt: Function reading a line without echo
        attempts: Number of tries before giving up

    Returns:
        The confirmed passphrase

    Raises:
        EncryptionError: If entries never match or are empty
    """
    for attempt in range(1, attempts + 1):
        passphrase = prompt('Enter passphrase: ')
        confirmation = prompt('Confirm passphrase: ')

        if not passphrase:
            logger.warning("Empty passphrase, please try again")
        elif passphrase == confirmation:
            return passphrase
        else:
            logger.warning(f"Passphrases do not match (attempt {attempt}/{attempts})")

    raise EncryptionError("Passphrases do not match")


def resolve_encryption(
    encrypt: bool = False,
    recipient: Optional[str] = None,
    passphrase: Optional[str] = None,
    passphrase_file: Optional[str] = None,
    prompt: Callable[[str], str] = getpass.getpass,
) -> EncryptionSpec:
    """
    Pick the encryption variant for a backup run.

    A recipient, passphrase or passphrase file enables encryption on its
    own. The recipient wins when several are given.

    Returns:
        EncryptionSpec

    Raises:
        EncryptionError: If no usable passphrase can be obtained
    """
    if recipient:
        if passphrase or passphrase_file:
            logger.warning(f"Recipient {recipient} given; ignoring passphrase")
        return EncryptionSpec.for_recipient(recipient)

    if passphrase_file:
        return EncryptionSpec.for_passphrase(read_passphrase_file(passphrase_file))
    if passphrase:
        return EncryptionSpec.for_passphrase(passphrase)
    if encrypt:
        return EncryptionSpec.for_passphrase(prompt_passphrase(prompt))

    return EncryptionSpec.none()


def encrypted_path_for(path) -> Path:
    return Path(f"{path}{ENCRYPTED_SUFFIX}")


def encrypt_command(path, output, spec: EncryptionSpec) -> List[str]:
    command = [GPG, '--yes', '--batch', '--quiet', '-z', '0', '--output', str(output)]
    if spec.kind == 'recipient':
        command.extend(['--recipient', spec.recipient, '--encrypt', str(path)])
    else:
        command.extend(['--pinentry-mode', 'loopback', '--passphrase-fd', '0', '--symmetric', str(path)])
    return command


def encrypt_file(path, spec: EncryptionSpec) -> Path:
    """
    Wrap an archive in a gpg envelope and remove the plaintext.

    Args:
        path: Compressed archive to encrypt
        spec: Active encryption variant

    Returns:
        Path of the encrypted file (path + '.gpg')

    Raises:
        EncryptionError: If gpg fails (the plaintext archive is kept)
    """
    if not spec.enabled:
        raise EncryptionError("Encryption requested without a recipient or passphrase")

    output = encrypted_path_for(path)
    command = encrypt_command(path, output, spec)
    secret = spec.passphrase.encode() if spec.kind == 'passphrase' else None

    logger.info(f"Encrypting {Path(path).name} ({spec.kind})")
    try:
        result = subprocess.run(
            command,
            input=secret,
            stdin=None if secret is not None else subprocess.DEVNULL,
            stderr=subprocess.PIPE,
        )
    except OSError as e:
        raise EncryptionError(f"Failed to run {GPG}: {e}") from e

    if result.returncode != 0:
        if output.exists():
            output.unlink()
        message = result.stderr.decode(errors='replace').strip().splitlines()
        detail = f": {message[-1]}" if message else ''
        raise EncryptionError(f"{GPG} exited with status {result.returncode}{detail}")

    os.remove(path)
    return output


def decrypt_command(path, passphrase: Optional[str] = None) -> Tuple[List[str], Optional[bytes]]:
    """
    Build the gpg invocation that writes the decrypted stream to stdout.

    Without a passphrase gpg is left to find the private key or prompt on
    its own.

    Returns:
        Tuple of (argument vector, bytes to feed on stdin or None)
    """
    if passphrase is None:
        return [GPG, '--quiet', '--decrypt', str(path)], None

    command = [
        GPG, '--batch', '--yes', '--quiet',
        '--pinentry-mode', 'loopback', '--passphrase-fd', '0',
        '--decrypt', str(path),
    ]
    return command, passphrase.encode()
