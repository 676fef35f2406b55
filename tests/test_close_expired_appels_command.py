import io
import logging
import re
import tempfile
import unittest
from contextlib import redirect_stderr, redirect_stdout
from datetime import datetime, timedelta
from pathlib import Path
from unittest.mock import patch
from zoneinfo import ZoneInfo

from freezegun import freeze_time
from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker

import rollcall.cli as cli_module
from rollcall.cli import APP_LOGGER_NAME, CRON_LOGGER_NAME, format_run_line, main
from rollcall.config import settings
from rollcall.core.time_provider import TimeProvider
from rollcall.db import Base
from rollcall.models import Appel, AppelStatus, AutomationFailureLog, Presence, PresenceStatus
import rollcall.services.appel_close_service as close_module
from rollcall.services.appel_close_service import CloseReport
from rollcall.services.expiry_scanner import ExpiredAppel


NOW = datetime(2026, 10, 19, 10, 0, 0)
RUN_LINE = re.compile(r'^\[\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}[+-]\d{2}:\d{2}\] ')


class FixedTimeProvider(TimeProvider):
    def __init__(self, frozen_dt: datetime):
        self._frozen_dt = frozen_dt

    def now(self) -> datetime:
        return self._frozen_dt


FIXED = FixedTimeProvider(NOW.replace(tzinfo=ZoneInfo('Europe/Paris')))


class CloseExpiredAppelsCommandTests(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls._tmpdir = tempfile.TemporaryDirectory()
        db_path = Path(cls._tmpdir.name) / 'test_close_expired_appels_command.db'
        cls._engine = create_engine(f"sqlite:///{db_path}", connect_args={'check_same_thread': False})
        cls._session_factory = sessionmaker(autocommit=False, autoflush=False, bind=cls._engine)
        Base.metadata.create_all(bind=cls._engine)

    @classmethod
    def tearDownClass(cls):
        cls._engine.dispose()
        cls._tmpdir.cleanup()

    def setUp(self):
        db = self._session_factory()
        try:
            db.query(AutomationFailureLog).delete()
            db.query(Presence).delete()
            db.query(Appel).delete()
            db.commit()
        finally:
            db.close()
        session_patch = patch('rollcall.domain.jobs.runtime.SessionLocal', self._session_factory)
        session_patch.start()
        self.addCleanup(session_patch.stop)
        app_logger = logging.getLogger(APP_LOGGER_NAME)
        for patcher in (
            patch.object(app_logger, 'handlers', []),
            patch.object(app_logger, 'propagate', True),
            patch.object(cli_module, '_quiet_handler', None),
        ):
            patcher.start()
            self.addCleanup(patcher.stop)

    def _seed_appel(self, *, expires_at: datetime, statuses: list[PresenceStatus]) -> int:
        db = self._session_factory()
        try:
            appel = Appel(
                label='Mathematiques appliquees',
                scheduled_start=expires_at - timedelta(minutes=20),
                scheduled_end=expires_at + timedelta(hours=1),
                expires_at=expires_at,
                status=AppelStatus.OPEN.value,
            )
            db.add(appel)
            db.flush()
            for learner_id, status in enumerate(statuses, start=1):
                db.add(Presence(appel_id=appel.id, learner_id=learner_id, status=status.value))
            db.commit()
            return int(appel.id)
        finally:
            db.close()

    def _statuses(self, appel_id: int) -> tuple[str, list[str]]:
        db = self._session_factory()
        try:
            appel = db.query(Appel).filter(Appel.id == appel_id).one()
            rows = db.query(Presence).filter(Presence.appel_id == appel_id).order_by(Presence.learner_id.asc()).all()
            return appel.status, [row.status for row in rows]
        finally:
            db.close()

    def _run(self, argv: list[str]) -> tuple[int, str, str]:
        stdout = io.StringIO()
        with self.assertLogs(CRON_LOGGER_NAME, level='INFO') as captured:
            with redirect_stdout(stdout), redirect_stderr(io.StringIO()):
                exit_code = main(argv, time_provider=FIXED)
        self.assertEqual(len(captured.records), 1)
        return exit_code, stdout.getvalue(), captured.records[0].getMessage()

    def test_live_run_closes_expired_appel(self):
        appel_id = self._seed_appel(
            expires_at=NOW - timedelta(hours=1),
            statuses=[PresenceStatus.PENDING, PresenceStatus.PENDING, PresenceStatus.SIGNED],
        )

        exit_code, output, line = self._run([])

        self.assertEqual(exit_code, 0)
        self.assertIn('1 session(s) closed.', output)
        self.assertEqual(line, '[2026-10-19T10:00:00+02:00] completed: 1 sessions processed')
        self.assertEqual(self._statuses(appel_id), ('closed', ['unsigned', 'unsigned', 'signed']))

    def test_nothing_to_process_is_a_success(self):
        self._seed_appel(expires_at=NOW + timedelta(minutes=10), statuses=[PresenceStatus.PENDING])

        exit_code, output, line = self._run([])

        self.assertEqual(exit_code, 0)
        self.assertIn('No expired roll calls to process.', output)
        self.assertRegex(line, RUN_LINE)
        self.assertTrue(line.endswith('completed: 0 sessions processed'))

    def test_dry_run_reports_without_changes(self):
        appel_id = self._seed_appel(expires_at=NOW - timedelta(minutes=30), statuses=[PresenceStatus.PENDING])

        exit_code, output, line = self._run(['--dry-run'])

        self.assertEqual(exit_code, 0)
        self.assertIn('Dry-run mode: no changes will be made.', output)
        self.assertIn('Would process 1 session(s), no changes made.', output)
        self.assertIn(f'appel #{appel_id}', output)
        self.assertTrue(line.endswith('completed: 0 sessions processed (dry-run, 1 candidates)'))
        self.assertEqual(self._statuses(appel_id), ('open', ['pending']))

    def test_scan_failure_exits_with_error_and_mutates_nothing(self):
        appel_id = self._seed_appel(expires_at=NOW - timedelta(hours=1), statuses=[PresenceStatus.PENDING])
        failure = OperationalError('SELECT appels', {}, Exception('no such table: appels'))

        with patch('rollcall.services.expiry_scanner.find_expired_open_appels', side_effect=failure):
            exit_code, output, line = self._run([])

        self.assertEqual(exit_code, 1)
        self.assertIn('Error while processing expired roll calls', output)
        self.assertRegex(line, RUN_LINE)
        self.assertIn('] ERROR: ', line)
        self.assertNotIn('\n', line)
        self.assertEqual(self._statuses(appel_id), ('open', ['pending']))

    def test_unexpected_exception_exits_with_error(self):
        with patch('rollcall.domain.jobs.close_expired_appels.close_expired_appels', side_effect=RuntimeError('boom')):
            exit_code, output, line = self._run([])

        self.assertEqual(exit_code, 1)
        self.assertIn('boom', output)
        self.assertTrue(line.endswith('ERROR: boom'))

    def test_partial_failure_is_not_a_fatal_outcome(self):
        failing_id = self._seed_appel(expires_at=NOW - timedelta(hours=2), statuses=[PresenceStatus.PENDING])
        ok_id = self._seed_appel(expires_at=NOW - timedelta(hours=1), statuses=[PresenceStatus.PENDING])
        original = close_module.mark_pending_presences_unsigned

        def flaky(session, appel_id, *, at):
            if appel_id == failing_id:
                raise OperationalError('UPDATE presences', {}, Exception('constraint failed'))
            return original(session, appel_id, at=at)

        with patch.object(close_module, 'mark_pending_presences_unsigned', side_effect=flaky):
            exit_code, output, line = self._run([])

        self.assertEqual(exit_code, 0)
        self.assertIn('1 session(s) closed.', output)
        self.assertIn(f'Failed to close appel #{failing_id}', output)
        self.assertTrue(line.endswith('completed: 1 sessions processed'))
        self.assertEqual(self._statuses(failing_id), ('open', ['pending']))
        self.assertEqual(self._statuses(ok_id), ('closed', ['unsigned']))

    def test_all_failed_run_still_exits_successfully(self):
        appel_id = self._seed_appel(expires_at=NOW - timedelta(hours=1), statuses=[PresenceStatus.PENDING])
        failure = OperationalError('UPDATE presences', {}, Exception('database is locked'))

        with patch.object(close_module, 'mark_pending_presences_unsigned', side_effect=failure):
            exit_code, output, line = self._run([])

        self.assertEqual(exit_code, 0)
        self.assertNotIn('No expired roll calls to process.', output)
        self.assertIn(f'Failed to close appel #{appel_id}', output)
        self.assertTrue(line.endswith('completed: 0 sessions processed'))

    def test_quiet_mode_still_writes_run_line(self):
        self._seed_appel(expires_at=NOW - timedelta(hours=1), statuses=[PresenceStatus.PENDING])

        exit_code, output, line = self._run(['--quiet'])

        self.assertEqual(exit_code, 0)
        self.assertEqual(output, '')
        self.assertTrue(line.endswith('completed: 1 sessions processed'))

    def test_quiet_scan_failure_writes_only_the_run_line(self):
        cron = logging.getLogger(CRON_LOGGER_NAME)
        failure = OperationalError('SELECT appels', {}, Exception('unable to open database file'))
        stdout, stderr = io.StringIO(), io.StringIO()

        with patch.object(cron, 'handlers', []), patch.object(settings, 'cron_log_path', ''), patch.object(
            settings, 'app_log_path', ''
        ):
            with patch('rollcall.services.expiry_scanner.find_expired_open_appels', side_effect=failure):
                with redirect_stdout(stdout), redirect_stderr(stderr):
                    exit_code = main(['--quiet'], time_provider=FIXED)

        self.assertEqual(exit_code, 1)
        lines = (stdout.getvalue() + stderr.getvalue()).splitlines()
        self.assertEqual(len(lines), 1, lines)
        self.assertRegex(lines[0], RUN_LINE)
        self.assertIn('] ERROR: ', lines[0])
        self.assertIn('unable to open database file', lines[0])

    def test_quiet_mode_sends_application_logs_to_app_log_path(self):
        failure = OperationalError('SELECT appels', {}, Exception('unable to open database file'))
        app_log = Path(self._tmpdir.name) / 'rollcall-app.log'

        with patch.object(settings, 'app_log_path', str(app_log)):
            with patch('rollcall.services.expiry_scanner.find_expired_open_appels', side_effect=failure):
                exit_code, output, line = self._run(['--quiet'])
            cli_module._quiet_handler.close()

        self.assertEqual(exit_code, 1)
        self.assertEqual(output, '')
        self.assertIn('] ERROR: ', line)
        logged = app_log.read_text(encoding='utf-8')
        self.assertIn('job_failed name=close_expired_appels', logged)
        self.assertIn('Traceback', logged)

    def test_all_candidates_already_closed_is_not_reported_as_nothing_to_process(self):
        appel_id = self._seed_appel(expires_at=NOW - timedelta(hours=1), statuses=[PresenceStatus.PENDING])
        stale = [ExpiredAppel(appel_id=appel_id, expires_at=NOW - timedelta(hours=1))]
        db = self._session_factory()
        try:
            db.query(Appel).filter(Appel.id == appel_id).update({Appel.status: AppelStatus.CLOSED.value})
            db.commit()
        finally:
            db.close()

        with patch.object(close_module, 'scan_expired_appels', return_value=stale):
            exit_code, output, line = self._run([])

        self.assertEqual(exit_code, 0)
        self.assertNotIn('No expired roll calls to process.', output)
        self.assertIn('1 session(s) already closed by another run.', output)
        self.assertTrue(line.endswith('completed: 0 sessions processed'))

    def test_batch_size_option_limits_the_run(self):
        for hours in (3, 2, 1):
            self._seed_appel(expires_at=NOW - timedelta(hours=hours), statuses=[PresenceStatus.PENDING])

        exit_code, output, line = self._run(['--batch-size', '2'])

        self.assertEqual(exit_code, 0)
        self.assertTrue(line.endswith('completed: 2 sessions processed'))

    def test_rejects_non_positive_batch_size(self):
        with redirect_stderr(io.StringIO()):
            with self.assertRaises(SystemExit) as ctx:
                main(['--batch-size', '0'], time_provider=FIXED)
        self.assertEqual(ctx.exception.code, 2)


class FormatRunLineTests(unittest.TestCase):
    @freeze_time('2026-10-19 08:00:00')
    def test_uses_default_time_provider_timezone(self):
        from rollcall.core.time_provider import default_time_provider

        line = format_run_line(default_time_provider.now(), report=CloseReport(mode='live', now=NOW))
        self.assertEqual(line, '[2026-10-19T10:00:00+02:00] completed: 0 sessions processed')

    def test_error_message_is_collapsed_to_one_line(self):
        at = NOW.replace(tzinfo=ZoneInfo('Europe/Paris'))
        line = format_run_line(at, error='(sqlite3.OperationalError) locked\n[SQL: UPDATE appels]')
        self.assertEqual(line, '[2026-10-19T10:00:00+02:00] ERROR: (sqlite3.OperationalError) locked [SQL: UPDATE appels]')


if __name__ == '__main__':
    unittest.main()
