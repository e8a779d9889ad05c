"""
Command line entry point.

Runs one backup pass driven entirely by PGBACKUP_* environment variables.

Exit status:
    0  every schema backed up
    1  prerequisites missing, bad configuration, or a failed --verify
    2  run completed but one or more schemas failed
    3  cancelled by SIGINT/SIGTERM
"""

import sys
import signal
import logging
import argparse
import threading

from pgbackup import __version__, configure_logging
from pgbackup.config import load_job
from pgbackup.backup.compression import PackagingError, verify_archive
from pgbackup.backup.executor import run_backup


logger = logging.getLogger('pgbackup')


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='pgbackup',
        description='Back up PostgreSQL schemas into daily/weekly/monthly tiers.'
    )
    parser.add_argument(
        '--verify',
        metavar='ARCHIVE',
        help='check an existing archive against its stored checksum and exit'
    )
    parser.add_argument('--version', action='version', version=f"%(prog)s {__version__}")
    return parser


def install_signal_handlers(cancel_event: threading.Event):
    """Turn SIGINT/SIGTERM into a cancellation request."""
    def handler(signum, frame):
        logger.warning(f"Received signal {signum}, cancelling backup")
        cancel_event.set()

    signal.signal(signal.SIGINT, handler)
    signal.signal(signal.SIGTERM, handler)


def _verify(archive_path: str) -> int:
    try:
        ok = verify_archive(archive_path)
    except PackagingError as e:
        logger.error(str(e))
        return 1

    if ok:
        logger.info(f"Checksum OK: {archive_path}")
        return 0
    logger.error(f"Checksum mismatch: {archive_path}")
    return 1


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    try:
        job = load_job()
    except ValueError as e:
        configure_logging()
        logger.critical(f"ERROR: Invalid configuration: {e}")
        return 1

    try:
        configure_logging(job.log_file, job.log_level)
    except OSError as e:
        configure_logging(None, job.log_level)
        logger.warning(f"Cannot write log file {job.log_file}: {e}; logging to terminal only")

    if args.verify:
        return _verify(args.verify)

    cancel_event = threading.Event()
    install_signal_handlers(cancel_event)

    result = run_backup(job, cancel_event=cancel_event)
    return result.exit_code
