#!/usr/bin/env python3
"""
Pomera Note Synchronization Script

Keeps a local folder of plain text notes synchronized with the IMAP mailbox
a Pomera uses to store its notes, with an initial reconciliation followed by
continuous monitoring of both sides.
"""

import argparse
import json
import logging
import os
import sys

from change_loop import ChangeLoop
from errors import TransportError
from imap_replica import DEFAULT_MAILBOX, DEFAULT_PORT, DEFAULT_SERVER, ImapRemoteReplica, load_token_file
from local_replica import LocalReplica
from sync_state import SyncState

# Logger will be configured in main() based on CLI arguments
logger = logging.getLogger(__name__)

DEFAULT_FOLDER = 'notes'
STATE_FILE_NAME = '.pomera_sync_state.json'


class PomeraSync:
    """Synchronizes a local note folder with the Pomera note mailbox."""

    def __init__(self, remote: ImapRemoteReplica, folder: str, address: str,
                 state_file: str):
        """
        Initialize note synchronization.

        Args:
            remote: Note mailbox on the IMAP server
            folder: Local note folder
            address: Account address written into uploaded notes
            state_file: Path to state file for tracking synced notes
        """
        self.remote = remote
        self.address = address
        self.state = SyncState(state_file)
        self.local = LocalReplica(folder, self.state)
        self.loop = ChangeLoop(self.remote, self.local, address, self.state)

    def run(self, once: bool = False) -> int:
        """Main execution flow."""
        try:
            self.remote.connect()
            self.loop.run(once=once)
        except KeyboardInterrupt:
            logger.info("\nShutdown requested")
        except TransportError as e:
            logger.error(f"Connection to the server failed: {e}")
            return 1
        finally:
            self.remote.disconnect()

        return 0


def configure_logging(log_target: str, debug: bool, max_bytes: int = 10*1024*1024, backup_count: int = 5):
    """Configure logging based on destination and debug level.

    Args:
        log_target: Logging target ('stdout', 'stderr', 'syslog', or a file path)
        debug: Enable debug logging level
        max_bytes: Maximum size of log file before rotation (default: 10MB)
        backup_count: Number of backup log files to keep (default: 5)
    """
    log_level = logging.DEBUG if debug else logging.INFO
    log_format = '%(asctime)s - %(levelname)s - %(message)s'
    date_format = '%Y-%m-%d %H:%M:%S'

    # Remove any existing handlers
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    if log_target == 'stdout':
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(log_format, datefmt=date_format))
    elif log_target == 'stderr':
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(log_format, datefmt=date_format))
    elif log_target == 'syslog':
        handler = _syslog_handler(log_format, date_format)
    else:
        try:
            handler = _rotating_file_handler(log_target, max_bytes, backup_count)
        except OSError as e:
            print(f"Error: Could not open log file {log_target}: {e}", file=sys.stderr)
            sys.exit(1)
        handler.setFormatter(logging.Formatter(log_format, datefmt=date_format))

    root_logger.addHandler(handler)
    root_logger.setLevel(log_level)

    if debug:
        logger.debug(f"Debug logging enabled, output to {log_target}")


def _syslog_handler(log_format: str, date_format: str) -> logging.Handler:
    if sys.platform == 'darwin' or sys.platform.startswith('linux'):
        from logging.handlers import SysLogHandler
        syslog_address = '/var/run/syslog' if sys.platform == 'darwin' else '/dev/log'
        try:
            handler = SysLogHandler(address=syslog_address)
            # Syslog format (no timestamp needed, syslog adds it)
            handler.setFormatter(logging.Formatter('pomera_sync: %(levelname)s - %(message)s'))
            return handler
        except OSError as e:
            print(f"Warning: Could not configure syslog: {e}, using stderr", file=sys.stderr)
    else:
        print("Warning: syslog not available on this platform, using stderr", file=sys.stderr)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(log_format, datefmt=date_format))
    return handler


def _rotating_file_handler(log_target: str, max_bytes: int, backup_count: int) -> logging.Handler:
    """Rotating file handler that compresses rotated files."""
    from logging.handlers import RotatingFileHandler
    import shutil

    # Check if zstd is available, fall back to gzip
    try:
        import zstandard as zstd
        use_zstd = True
        compression_ext = '.zst'
    except ImportError:
        import gzip
        use_zstd = False
        compression_ext = '.gz'

    def rotator(source, dest):
        """Compress rotated log files with zstd (preferred) or gzip (fallback)."""
        if use_zstd:
            with open(source, 'rb') as f_in:
                with open(f'{dest}{compression_ext}', 'wb') as f_out:
                    cctx = zstd.ZstdCompressor(level=3)
                    with cctx.stream_writer(f_out) as compressor:
                        shutil.copyfileobj(f_in, compressor)
        else:
            with open(source, 'rb') as f_in:
                with gzip.open(f'{dest}{compression_ext}', 'wb') as f_out:
                    shutil.copyfileobj(f_in, f_out)
        os.remove(source)

    handler = RotatingFileHandler(
        log_target,
        mode='a',
        maxBytes=max_bytes,
        backupCount=backup_count,
        encoding='utf-8'
    )
    handler.rotator = rotator
    return handler


def parse_size(size_str: str) -> int:
    """Parse size string like '10M', '100K', '1G' to bytes."""
    size_str = size_str.strip().upper()
    if size_str.endswith('K'):
        return int(size_str[:-1]) * 1024
    elif size_str.endswith('M'):
        return int(size_str[:-1]) * 1024 * 1024
    elif size_str.endswith('G'):
        return int(size_str[:-1]) * 1024 * 1024 * 1024
    else:
        # Assume bytes if no suffix
        return int(size_str)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='pomera_sync',
        usage='%(prog)s [options] ADDRESS CREDENTIAL [LOCAL_FOLDER]',
        description='Synchronize a local note folder with the Pomera note mailbox',
        formatter_class=argparse.RawDescriptionHelpFormatter
    )

    parser.add_argument('address', metavar='ADDRESS',
                       help='Mail account address (e.g. your Gmail address)')
    parser.add_argument('credential', metavar='CREDENTIAL',
                       help='App password, or an OAuth2 token file with --oauth')
    parser.add_argument('folder', metavar='LOCAL_FOLDER', nargs='?', default=DEFAULT_FOLDER,
                       help=f'Local note folder (default: {DEFAULT_FOLDER})')

    parser.add_argument('--server', default=DEFAULT_SERVER,
                       help=f'IMAP server (default: {DEFAULT_SERVER})')
    parser.add_argument('--port', type=int, default=DEFAULT_PORT,
                       help=f'IMAP over SSL port (default: {DEFAULT_PORT})')
    parser.add_argument('--mailbox', default=DEFAULT_MAILBOX,
                       help=f'Mailbox the Pomera stores notes in (default: {DEFAULT_MAILBOX})')
    parser.add_argument('--oauth', action='store_true',
                       help='Treat CREDENTIAL as an OAuth2 token file (see get_gmail_token.py)')
    parser.add_argument('--state-file',
                       help=f'Path to state file for tracking synced notes (default: LOCAL_FOLDER/{STATE_FILE_NAME})')
    parser.add_argument('--log', default='stdout',
                       help='Logging target: stdout, stderr, syslog, or a file path (default: stdout)')
    parser.add_argument('--log-max-size', default='10M',
                       help='Maximum log file size before rotation, e.g., 100K, 10M, 1G (default: 10M)')
    parser.add_argument('--log-max-files', type=int, default=5,
                       help='Maximum number of rotated log files to keep (default: 5)')
    parser.add_argument('--debug', action='store_true',
                       help='Enable debug logging')
    parser.add_argument('--poll-interval', type=int, default=60,
                       help='Seconds between polls if IDLE is not supported (default: 60)')
    parser.add_argument('--no-idle', action='store_true',
                       help='Disable IDLE and force polling mode')
    parser.add_argument('--once', action='store_true',
                       help='Run a single synchronization pass and exit')
    return parser


def main(argv=None):
    """Parse arguments and run the sync."""
    args = build_parser().parse_args(argv)

    try:
        max_log_bytes = parse_size(args.log_max_size)
    except ValueError:
        print(f"Error: Invalid log size format '{args.log_max_size}'. Use format like 100K, 10M, or 1G", file=sys.stderr)
        return 1

    configure_logging(args.log, args.debug, max_log_bytes, args.log_max_files)

    password = None
    token_file = None
    token_data = None
    if args.oauth:
        token_file = args.credential
        try:
            token_data = load_token_file(token_file)
        except FileNotFoundError:
            logger.error(f"Token file not found: {token_file}")
            return 1
        except json.JSONDecodeError as e:
            logger.error(f"Invalid JSON in token file: {e}")
            return 1
        except (OSError, ValueError) as e:
            logger.error(f"Error reading token file: {e}")
            return 1
    else:
        password = args.credential

    remote = ImapRemoteReplica(
        server=args.server,
        port=args.port,
        user=args.address,
        password=password,
        mailbox=args.mailbox,
        token_file=token_file,
        token_data=token_data,
        use_idle=not args.no_idle,
        poll_interval=args.poll_interval,
    )
    if args.no_idle:
        logger.info("IDLE disabled by user, forcing polling mode")

    state_file = args.state_file or os.path.join(args.folder, STATE_FILE_NAME)
    os.makedirs(args.folder, exist_ok=True)

    sync = PomeraSync(remote, args.folder, args.address, state_file)
    return sync.run(once=args.once)


if __name__ == '__main__':
    sys.exit(main())
