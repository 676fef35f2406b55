from __future__ import annotations

import argparse
import logging
import sys
from datetime import datetime

from rollcall.config import settings
from rollcall.core.time_provider import TimeProvider, default_time_provider
from rollcall.domain.jobs.close_expired_appels import execute
from rollcall.services.appel_close_service import CloseReport


APP_LOGGER_NAME = 'rollcall'
CRON_LOGGER_NAME = 'rollcall.cron'
LOG_FORMAT = '%(asctime)s %(levelname)s %(name)s %(message)s'

_quiet_handler: logging.Handler | None = None

GREEN = '\033[32m'
YELLOW = '\033[33m'
RED = '\033[31m'
RESET = '\033[0m'

EPILOG = """\
Recommended cron entry (every 15 minutes):
  */15 * * * * cd /srv/rollcall && APP_LOG_PATH=/var/log/rollcall-app.log rollcall-close-expired --quiet \
      >> /var/log/rollcall-appels.log 2>> /var/log/rollcall-errors.log
"""


def _positive_int(value: str) -> int:
    try:
        parsed = int(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f'invalid integer: {value!r}') from exc
    if parsed <= 0:
        raise argparse.ArgumentTypeError('must be a positive integer')
    return parsed


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog='rollcall-close-expired',
        description='Close roll calls whose signature deadline has expired and mark pending presences as unsigned.',
        epilog=EPILOG,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument('--dry-run', action='store_true', help='Show what would be closed without making any change.')
    parser.add_argument(
        '--batch-size',
        type=_positive_int,
        default=None,
        help=f'Maximum number of roll calls handled in one run (default: {settings.appel_expiry_batch_size}).',
    )
    parser.add_argument('--quiet', action='store_true', help='Only write the one-line run log record.')
    return parser.parse_args(argv)


def cron_logger() -> logging.Logger:
    logger = logging.getLogger(CRON_LOGGER_NAME)
    if not logger.handlers:
        if settings.cron_log_path:
            handler: logging.Handler = logging.FileHandler(settings.cron_log_path, encoding='utf-8')
        else:
            handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter('%(message)s'))
        logger.addHandler(handler)
        logger.setLevel(logging.INFO)
        logger.propagate = False
    return logger


def configure_logging(*, quiet: bool) -> None:
    if not quiet:
        logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)
        return

    # Quiet runs share stdout/stderr with the run line, so application records
    # stay on the package logger and never reach the root handlers.
    global _quiet_handler
    app_logger = logging.getLogger(APP_LOGGER_NAME)
    if _quiet_handler is not None:
        app_logger.removeHandler(_quiet_handler)
        _quiet_handler.close()
    if settings.app_log_path:
        _quiet_handler = logging.FileHandler(settings.app_log_path, encoding='utf-8')
        _quiet_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    else:
        _quiet_handler = logging.NullHandler()
    app_logger.addHandler(_quiet_handler)
    app_logger.setLevel(logging.INFO)
    app_logger.propagate = False


def format_run_line(at: datetime, *, report: CloseReport | None = None, error: str | None = None) -> str:
    stamp = at.isoformat(timespec='seconds')
    if error is not None:
        message = ' '.join(str(error).split()) or 'unknown error'
        return f'[{stamp}] ERROR: {message}'
    processed = report.closed_count if report is not None else 0
    line = f'[{stamp}] completed: {processed} sessions processed'
    if report is not None and report.dry_run:
        line += f' (dry-run, {report.candidate_count} candidates)'
    return line


class _Console:
    def __init__(self, *, quiet: bool) -> None:
        self.quiet = quiet
        self.colored = sys.stdout.isatty()

    def _write(self, text: str, color: str = '') -> None:
        if self.quiet:
            return
        if color and self.colored:
            text = f'{color}{text}{RESET}'
        print(text)

    def title(self, text: str) -> None:
        self._write(text)
        self._write('=' * len(text))

    def text(self, text: str) -> None:
        self._write(text)

    def success(self, text: str) -> None:
        self._write(f'[OK] {text}', GREEN)

    def warning(self, text: str) -> None:
        self._write(f'[WARNING] {text}', YELLOW)

    def error(self, text: str) -> None:
        self._write(f'[ERROR] {text}', RED)


def _render_report(console: _Console, report: CloseReport) -> None:
    if report.dry_run:
        console.text(f'Would process {report.candidate_count} session(s), no changes made.')
        for candidate in report.candidates:
            console.text(f' - appel #{candidate.appel_id} (deadline {candidate.expires_at.isoformat(timespec="minutes")})')
        return

    if report.closed_count > 0:
        console.success(f'{report.closed_count} session(s) closed.')
        for stats in report.closed:
            console.text(
                f' - appel #{stats.appel_id}: {stats.present} present ({stats.late} late), '
                f'{stats.absent} absent, {stats.excused} excused, '
                f'{stats.newly_unsigned} marked unsigned ({stats.attendance_rate}% attendance)'
            )
    elif report.candidate_count == 0:
        console.text('No expired roll calls to process.')

    if report.skipped:
        console.text(f'{len(report.skipped)} session(s) already closed by another run.')
    for failure in report.failures:
        console.warning(f'Failed to close appel #{failure.appel_id}: {failure.error}')


def main(argv: list[str] | None = None, *, time_provider: TimeProvider = default_time_provider) -> int:
    args = parse_args(argv)
    configure_logging(quiet=args.quiet)
    console = _Console(quiet=args.quiet)
    console.title('Processing expired roll calls')
    if args.dry_run:
        console.warning('Dry-run mode: no changes will be made.')

    try:
        report = execute(dry_run=args.dry_run, batch_size=args.batch_size, time_provider=time_provider)
    except Exception as exc:
        console.error(f'Error while processing expired roll calls: {exc}')
        cron_logger().info(format_run_line(time_provider.now(), error=str(exc)))
        return 1

    _render_report(console, report)
    cron_logger().info(format_run_line(time_provider.now(), report=report))
    return 0


if __name__ == '__main__':
    sys.exit(main())
