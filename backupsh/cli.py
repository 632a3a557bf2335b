"""
Command-line entry point.

    backupsh backup [options] user@host [paths ...]
    backupsh restore [options] backup_file [destination]

Options are parsed once into immutable records (BackupOptions,
RestoreOptions); nothing past this module looks at raw arguments.
"""

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional

from backupsh import __version__, configure_logging
from backupsh.backup.encryption import EncryptionSpec, read_passphrase_file, resolve_encryption
from backupsh.backup.executor import BackupExecutor
from backupsh.backup.plan import MODES, BackupOptions, PathArg, resolve_plan
from backupsh.backup.remote import TransportOptions
from backupsh.backup.restore import RestoreExecutor, RestoreOptions
from backupsh.config import Defaults, load_config
from backupsh.errors import BackupError


logger = logging.getLogger(__name__)

COMMANDS = ('backup', 'restore')

BACKUP_EPILOG = """\
Quick start
  backupsh backup user@host                 full system backup with default excludes
  backupsh backup --mode home user@host     home directories only
  backupsh backup -r KEY user@host          encrypted full backup

Positional paths default to include-only mode. With --compat (or
BACKUPSH_COMPAT=1) they become excludes instead, widened with /* unless
given with -f.
"""


def build_backup_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='backupsh backup',
        description='Stream a tar backup of a remote host into a local zstd archive.',
        epilog=BACKUP_EPILOG,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument('host', help='user@hostname of the remote server to back up')
    parser.add_argument('paths', nargs='*', help='paths to include (or exclude with --compat)')

    rules = parser.add_argument_group('path rules')
    rules.add_argument('-m', '--mode', choices=MODES, help='full | home | custom (default: config or full)')
    rules.add_argument('--include', action='append', default=[], metavar='PATH',
                       help='path to include; repeatable, implies include-only')
    rules.add_argument('--exclude', action='append', default=[], metavar='PATH',
                       help='pattern to exclude; repeatable')
    rules.add_argument('-i', '--include-only', action='store_true', help='only back up the given paths')
    rules.add_argument('-f', '--literal', action='append', default=[], metavar='PATH',
                       help='with --compat: exclude PATH exactly, without appending /*')
    rules.add_argument('--compat', dest='compat', action='store_true', default=None,
                       help='legacy semantics: positional paths become excludes')
    rules.add_argument('--no-compat', dest='compat', action='store_false')
    rules.add_argument('-x', '--one-file-system', action='store_true', default=None,
                       help='do not cross filesystem boundaries')

    output = parser.add_argument_group('output')
    output.add_argument('--output-dir', metavar='DIR', help='directory for archives (default: config or cwd)')
    output.add_argument('--label', help='suffix for filenames (e.g. nightly)')
    output.add_argument('-s', '--skip-checksum', action='store_true', default=None, help='skip SHA-256 calculation')
    output.add_argument('--verify', dest='verify', action='store_true', default=None,
                        help='decode the finished archive to confirm it is readable')
    output.add_argument('--no-verify', dest='verify', action='store_false')
    output.add_argument('--preview', action='store_true', help='print the resolved plan and exit')

    crypto = parser.add_argument_group('encryption')
    crypto.add_argument('-e', '--encrypt', action='store_true', default=None, help='enable gpg encryption')
    crypto.add_argument('-r', '--recipient', metavar='KEY', help='gpg recipient; enables encryption')
    crypto.add_argument('-p', '--passphrase', help='symmetric encryption with the given passphrase')
    crypto.add_argument('--passphrase-file', metavar='FILE', help='read passphrase from FILE (- for stdin)')

    remote = parser.add_argument_group('remote')
    remote.add_argument('-c', '--continue-on-change', action='store_true', default=None,
                        help='do not abort when tar reports files changed while reading')
    remote.add_argument('-n', '--skip-root-check', dest='skip_root_check', action='store_true', default=None,
                        help='run tar as the connecting user without probing for root/sudo')
    remote.add_argument('--no-skip-root-check', dest='skip_root_check', action='store_false')
    remote.add_argument('--ssh-port', type=int, metavar='PORT', help='SSH port')
    remote.add_argument('--ssh-identity', metavar='FILE', help='private key file')
    remote.add_argument('--ssh-config', metavar='FILE', help='ssh_config file to read host settings from')

    _add_common_arguments(parser)
    return parser


def build_restore_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='backupsh restore',
        description='Verify, decrypt, decompress and extract a backup archive.',
    )
    parser.add_argument('backup_file', help='path of the backup file to restore')
    parser.add_argument('destination', nargs='?', default='.',
                        help='directory to restore into (default: current directory)')
    parser.add_argument('-s', '--no-subdir', dest='subdirectory', action='store_false',
                        help='extract directly into destination instead of a subdirectory')
    parser.add_argument('--sudo', action='store_true', help='run the local tar extraction through sudo')
    parser.add_argument('-l', '--list', dest='list_only', action='store_true',
                        help='list archive contents without extracting')
    parser.add_argument('--path', dest='members', action='append', default=[], metavar='MEMBER',
                        help='only restore this archive member; repeatable')
    parser.add_argument('-p', '--passphrase', help='passphrase for symmetric archives')
    parser.add_argument('--passphrase-file', metavar='FILE', help='read passphrase from FILE (- for stdin)')
    parser.add_argument('-v', '--verbose', action='store_true', help='debug logging')
    return parser


def _add_common_arguments(parser):
    parser.add_argument('--config', metavar='FILE', help='explicit config file')
    parser.add_argument('-v', '--verbose', action='store_true', help='debug logging')


def _pick(value, default):
    return default if value is None else value


def build_backup_options(args: argparse.Namespace, defaults: Defaults) -> BackupOptions:
    """Merge parsed arguments over config defaults."""
    positional = tuple(PathArg(path) for path in args.paths)
    positional += tuple(PathArg(path, literal=True) for path in args.literal)

    return BackupOptions(
        host=args.host,
        mode=args.mode or defaults.mode,
        include_paths=tuple(args.include),
        exclude_paths=tuple(args.exclude),
        default_include_paths=defaults.include_paths,
        default_exclude_paths=defaults.exclude_patterns,
        positional=positional,
        include_only=args.include_only,
        compat=_pick(args.compat, defaults.compat_mode),
        one_file_system=_pick(args.one_file_system, defaults.one_file_system),
        label=args.label or defaults.label,
        output_dir=Path(args.output_dir or defaults.output_dir or Path.cwd()),
    )


def build_transport_options(args: argparse.Namespace, defaults: Defaults) -> TransportOptions:
    return TransportOptions(
        port=_pick(args.ssh_port, defaults.ssh_port),
        identity_file=args.ssh_identity or defaults.ssh_identity_file,
        ssh_config_file=args.ssh_config or defaults.ssh_config_file,
        connect_timeout=defaults.ssh_connect_timeout,
    )


def preview_encryption(args: argparse.Namespace, defaults: Defaults) -> EncryptionSpec:
    """Encryption variant for --preview, without prompting or reading secrets."""
    recipient = args.recipient or defaults.recipient
    if recipient:
        return EncryptionSpec.for_recipient(recipient)
    if args.passphrase or args.passphrase_file or _pick(args.encrypt, defaults.encrypt):
        return EncryptionSpec(kind='passphrase')
    return EncryptionSpec.none()


def run_backup(argv: List[str]) -> int:
    args = build_backup_parser().parse_intermixed_args(argv)
    defaults = load_config(args.config)
    configure_logging(args.verbose, defaults.log_file)
    if defaults.source:
        logger.info(f"Loaded config from {defaults.source}")

    plan = resolve_plan(build_backup_options(args, defaults))

    encrypt = _pick(args.encrypt, defaults.encrypt)
    recipient = args.recipient or defaults.recipient
    executor_kwargs = dict(
        transport=build_transport_options(args, defaults),
        skip_checksum=_pick(args.skip_checksum, defaults.skip_checksum),
        continue_on_change=_pick(args.continue_on_change, defaults.continue_on_change),
        skip_root_check=_pick(args.skip_root_check, defaults.skip_root_check),
        verify=_pick(args.verify, defaults.verify),
        config_file=defaults.source,
    )

    if args.preview:
        executor = BackupExecutor(plan, preview_encryption(args, defaults), **executor_kwargs)
        print(executor.preview())
        return 0

    encryption = resolve_encryption(
        encrypt=encrypt,
        recipient=recipient,
        passphrase=args.passphrase,
        passphrase_file=args.passphrase_file,
    )
    executor = BackupExecutor(plan, encryption, **executor_kwargs)
    executor.execute()
    return 0


def run_restore(argv: List[str]) -> int:
    args = build_restore_parser().parse_args(argv)
    configure_logging(args.verbose)

    passphrase = args.passphrase
    if args.passphrase_file:
        passphrase = read_passphrase_file(args.passphrase_file)

    options = RestoreOptions(
        archive=Path(args.backup_file),
        destination=Path(args.destination),
        subdirectory=args.subdirectory,
        elevate=args.sudo,
        list_only=args.list_only,
        members=tuple(args.members),
        passphrase=passphrase,
    )
    RestoreExecutor(options).execute()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='backupsh',
        description='Remote filesystem backups over SSH, streamed through zstd and optional gpg.',
    )
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')
    parser.add_argument('command', choices=COMMANDS)
    parser.add_argument('args', nargs=argparse.REMAINDER, help='command arguments (see backupsh COMMAND --help)')
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(sys.argv[1:] if argv is None else argv)
    runner = run_backup if args.command == 'backup' else run_restore

    try:
        return runner(args.args)
    except BackupError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("Error: Interrupted", file=sys.stderr)
        return 130


if __name__ == '__main__':
    sys.exit(main())
