import os
import shutil
import tempfile
import threading
import unittest
from datetime import date, datetime, timedelta
from unittest import mock
from zoneinfo import ZoneInfo

import requests

from mealcard.errors import InvalidRequest, LedgerIntegrityError
from mealcard.extensions import db
from mealcard.models import DenialEntry, VerificationAttempt, VerificationRecord
from mealcard.services.denials import DenialList
from mealcard.services.verification_service import (
    DENIED,
    GRANTED,
    REASON_ACCESS_DENIED,
    REASON_ALREADY_SERVED,
    REASON_DUPLICATE,
    UNAVAILABLE,
    VerificationEngine,
    VerificationRequest,
)
from mealcard.models.verification import STATUS_FAILED, STATUS_VERIFIED, as_utc
from tests.helpers import at, make_app

SERVICE_DATE = date(2025, 3, 3)


class EngineTestCase(unittest.TestCase):
    def setUp(self):
        self.app = make_app()
        self.ctx = self.app.app_context()
        self.ctx.push()
        db.create_all()
        self.engine = self.app.extensions['verification_engine']

    def tearDown(self):
        db.session.remove()
        db.drop_all()
        self.ctx.pop()

    def verify(self, token, meal_type, when, engine=None):
        return (engine or self.engine).verify(VerificationRequest(token, meal_type, when))

    def record(self, token, meal_type, service_date=SERVICE_DATE):
        return VerificationRecord.query.filter_by(
            token=token, meal_type=meal_type, service_date=service_date
        ).one_or_none()

    def deny(self, token, **kwargs):
        entry = DenialEntry(token=token, reason=kwargs.pop('reason', 'Unpaid meal plan'), **kwargs)
        db.session.add(entry)
        db.session.commit()
        return entry


class TestReplayPolicy(EngineTestCase):
    def test_first_request_is_granted(self):
        outcome = self.verify('S1001', 'lunch', at(12))

        self.assertEqual(outcome.status, GRANTED)
        self.assertIsNone(outcome.reason)
        record = self.record('S1001', 'lunch')
        self.assertEqual(record.status, STATUS_VERIFIED)
        self.assertEqual(as_utc(record.served_at), at(12))

    def test_replay_inside_window_is_denied_and_marks_record_failed(self):
        self.verify('S1001', 'lunch', at(12))
        outcome = self.verify('S1001', 'lunch', at(12, 5))

        self.assertEqual(outcome.status, DENIED)
        self.assertEqual(outcome.reason, REASON_DUPLICATE)
        self.assertEqual(outcome.message, 'duplicate attempt within replay window')
        record = self.record('S1001', 'lunch')
        self.assertEqual(record.status, STATUS_FAILED)
        self.assertEqual(as_utc(record.timestamp), at(12, 5))

    def test_replay_without_revocation_keeps_grant(self):
        engine = VerificationEngine(revoke_on_replay=False)
        self.verify('S1001', 'lunch', at(12), engine)
        outcome = self.verify('S1001', 'lunch', at(12, 5), engine)

        self.assertEqual(outcome.reason, REASON_DUPLICATE)
        self.assertEqual(self.record('S1001', 'lunch').status, STATUS_VERIFIED)

    def test_request_after_window_is_already_served_and_not_mutated(self):
        self.verify('S1001', 'lunch', at(12))
        outcome = self.verify('S1001', 'lunch', at(12, 15))

        self.assertEqual(outcome.status, DENIED)
        self.assertEqual(outcome.reason, REASON_ALREADY_SERVED)
        record = self.record('S1001', 'lunch')
        self.assertEqual(record.status, STATUS_VERIFIED)
        self.assertEqual(as_utc(record.timestamp), at(12))

    def test_window_boundary_counts_as_outside(self):
        self.verify('S1001', 'lunch', at(12))
        outcome = self.verify('S1001', 'lunch', at(12, 10))
        self.assertEqual(outcome.reason, REASON_ALREADY_SERVED)

    def test_lunch_scenario_never_grants_twice(self):
        first = self.verify('S1001', 'lunch', at(12, 0, 0))
        second = self.verify('S1001', 'lunch', at(12, 3, 0))
        self.assertEqual(self.record('S1001', 'lunch').status, STATUS_FAILED)
        third = self.verify('S1001', 'lunch', at(12, 25, 0))

        self.assertEqual(first.status, GRANTED)
        self.assertEqual((second.status, second.reason), (DENIED, REASON_DUPLICATE))
        self.assertEqual((third.status, third.reason), (DENIED, REASON_ALREADY_SERVED))

        record = self.record('S1001', 'lunch')
        self.assertEqual(as_utc(record.served_at), at(12, 0, 0))
        self.assertEqual(VerificationRecord.query.count(), 1)

    def test_meals_and_days_are_independent(self):
        self.assertEqual(self.verify('S1001', 'breakfast', at(8)).status, GRANTED)
        self.assertEqual(self.verify('S1001', 'lunch', at(12)).status, GRANTED)
        self.assertEqual(self.verify('S1001', 'dinner', at(19)).status, GRANTED)
        self.assertEqual(self.verify('S1001', 'lunch', at(12, day=4)).status, GRANTED)
        self.assertEqual(self.verify('S1002', 'lunch', at(12)).status, GRANTED)

    def test_every_decision_is_logged_as_an_attempt(self):
        self.verify('S1001', 'lunch', at(12))
        self.verify('S1001', 'lunch', at(12, 3))
        self.verify('S1001', 'lunch', at(12, 25))

        attempts = VerificationAttempt.query.order_by(VerificationAttempt.id).all()
        self.assertEqual(
            [(a.outcome, a.reason) for a in attempts],
            [(GRANTED, None), (DENIED, REASON_DUPLICATE), (DENIED, REASON_ALREADY_SERVED)],
        )


class TestDenials(EngineTestCase):
    def test_active_denial_wins_on_first_request(self):
        self.deny('S2001', reason='Suspended by student dean')
        outcome = self.verify('S2001', 'lunch', at(12))

        self.assertEqual(outcome.status, DENIED)
        self.assertEqual(outcome.reason, REASON_ACCESS_DENIED)
        self.assertEqual(outcome.message, 'Suspended by student dean')
        record = self.record('S2001', 'lunch')
        self.assertEqual(record.status, STATUS_FAILED)
        self.assertIsNone(record.served_at)

    def test_denial_does_not_overwrite_existing_grant(self):
        self.verify('S2001', 'lunch', at(12))
        self.deny('S2001')

        outcome = self.verify('S2001', 'lunch', at(12, 30))
        self.assertEqual(outcome.reason, REASON_ACCESS_DENIED)
        self.assertEqual(self.record('S2001', 'lunch').status, STATUS_VERIFIED)

    def test_inactive_and_non_covering_denials_are_ignored(self):
        self.deny('S2001', active=False)
        self.deny('S2001', meal_types='dinner')
        self.deny('S2001', start_date=date(2025, 4, 1))
        self.deny('S2001', end_date=date(2025, 3, 2))

        self.assertEqual(self.verify('S2001', 'lunch', at(12)).status, GRANTED)
        self.assertEqual(self.verify('S2001', 'dinner', at(19)).reason, REASON_ACCESS_DENIED)

    def test_failed_record_recovers_once_outside_window(self):
        entry = self.deny('S2001')
        self.verify('S2001', 'lunch', at(12))
        entry.active = False
        db.session.commit()

        early = self.verify('S2001', 'lunch', at(12, 5))
        self.assertEqual(early.reason, REASON_DUPLICATE)
        self.assertEqual(self.record('S2001', 'lunch').status, STATUS_FAILED)

        late = self.verify('S2001', 'lunch', at(12, 16))
        self.assertEqual(late.status, GRANTED)
        record = self.record('S2001', 'lunch')
        self.assertEqual(record.status, STATUS_VERIFIED)
        self.assertEqual(as_utc(record.served_at), at(12, 16))

    def test_remote_denial_service(self):
        engine = VerificationEngine(denials=DenialList('http://access-control:8080/'))
        response = mock.Mock(status_code=200)
        response.json.return_value = {'denied': True, 'reason': 'Meal plan expired'}

        with mock.patch('mealcard.services.denials.requests.get', return_value=response) as get:
            outcome = self.verify('S2001', 'lunch', at(12), engine)

        self.assertEqual(outcome.reason, REASON_ACCESS_DENIED)
        self.assertEqual(outcome.message, 'Meal plan expired')
        self.assertEqual(get.call_args.args[0], 'http://access-control:8080/denials/active')
        self.assertEqual(get.call_args.kwargs['params']['date'], '2025-03-03')

    def test_unreachable_denial_service_fails_closed(self):
        engine = VerificationEngine(denials=DenialList('http://access-control:8080'))
        with mock.patch('mealcard.services.denials.requests.get',
                        side_effect=requests.ConnectionError('refused')):
            outcome = self.verify('S2001', 'lunch', at(12), engine)

        self.assertEqual(outcome.status, UNAVAILABLE)
        self.assertEqual(outcome.message, 'verification unavailable')
        self.assertIsNone(self.record('S2001', 'lunch'))

    def test_bad_denial_service_replies_fail_closed(self):
        engine = VerificationEngine(denials=DenialList('http://access-control:8080'))

        not_json = mock.Mock(status_code=200, text='<html>gateway</html>')
        not_json.json.side_effect = requests.JSONDecodeError('Expecting value', '<html>', 0)
        wrong_shape = mock.Mock(status_code=200, text='[]')
        wrong_shape.json.return_value = ['S2001']
        server_error = mock.Mock(status_code=502, text='bad gateway')

        for response in (not_json, wrong_shape, server_error):
            with mock.patch('mealcard.services.denials.requests.get', return_value=response):
                outcome = self.verify('S2001', 'lunch', at(12), engine)
            self.assertEqual(outcome.status, UNAVAILABLE, response.text)

        self.assertIsNone(self.record('S2001', 'lunch'))
        self.assertEqual(VerificationAttempt.query.count(), 0)


class TestValidationAndFailures(EngineTestCase):
    def test_unknown_meal_type_is_rejected_before_ledger(self):
        with self.assertRaises(InvalidRequest):
            self.verify('S1001', 'brunch', at(11))
        self.assertEqual(VerificationRecord.query.count(), 0)
        self.assertEqual(VerificationAttempt.query.count(), 0)

    def test_meal_type_is_case_insensitive(self):
        self.assertEqual(self.verify('S1001', ' Lunch ', at(12)).status, GRANTED)
        self.assertIsNotNone(self.record('S1001', 'lunch'))

    def test_blank_token_is_rejected(self):
        with self.assertRaises(InvalidRequest):
            self.verify('   ', 'lunch', at(12))

    def test_service_date_follows_campus_timezone(self):
        engine = VerificationEngine(campus_tz=ZoneInfo('Africa/Addis_Ababa'))
        # 22:30 UTC is already 01:30 the next day in UTC+3
        self.verify('S1001', 'dinner', at(22, 30), engine)
        self.assertIsNotNone(self.record('S1001', 'dinner', date(2025, 3, 4)))

        self.verify('S1002', 'dinner', datetime(2025, 3, 3, 23, 50), engine)
        self.assertIsNotNone(self.record('S1002', 'dinner', date(2025, 3, 3)))

    def test_revocation_flag_accepts_string_config(self):
        app = make_app(REPLAY_REVOKES_GRANT='false')
        self.assertFalse(app.extensions['verification_engine'].revoke_on_replay)
        app = make_app(REPLAY_REVOKES_GRANT='yes')
        self.assertTrue(app.extensions['verification_engine'].revoke_on_replay)

    def test_lock_timeout_fails_closed(self):
        engine = VerificationEngine(lock_timeout=0.05)
        with engine.locks.hold(('S1001', 'lunch', SERVICE_DATE)):
            outcome = self.verify('S1001', 'lunch', at(12), engine)

        self.assertEqual(outcome.status, UNAVAILABLE)
        self.assertIsNone(self.record('S1001', 'lunch'))

    def test_corrupt_record_propagates(self):
        db.session.add(VerificationRecord(
            token='S1001', meal_type='lunch', service_date=SERVICE_DATE,
            status='pending', timestamp=at(11),
        ))
        db.session.commit()

        with self.assertRaises(LedgerIntegrityError):
            self.verify('S1001', 'lunch', at(12))


class TestConcurrentVerification(unittest.TestCase):
    WORKERS = 8

    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()
        db_path = os.path.join(self.tmpdir, 'ledger.db')
        self.app = make_app(SQLALCHEMY_DATABASE_URI=f"sqlite:///{db_path}")
        with self.app.app_context():
            db.create_all()
        self.engine = self.app.extensions['verification_engine']

    def tearDown(self):
        with self.app.app_context():
            db.engine.dispose()
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def run_workers(self, tokens, when):
        results = []
        errors = []
        barrier = threading.Barrier(len(tokens))

        def worker(token):
            with self.app.app_context():
                barrier.wait()
                try:
                    results.append(self.engine.verify(VerificationRequest(token, 'lunch', when)).status)
                except Exception as e:
                    errors.append(e)

        threads = [threading.Thread(target=worker, args=(t,)) for t in tokens]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)

        self.assertEqual(errors, [])
        return results

    def test_same_key_is_granted_at_most_once(self):
        results = self.run_workers(['S1001'] * self.WORKERS, at(12))

        self.assertEqual(len(results), self.WORKERS)
        self.assertEqual(results.count(GRANTED), 1)
        with self.app.app_context():
            self.assertEqual(VerificationRecord.query.count(), 1)
            self.assertEqual(VerificationAttempt.query.count(), self.WORKERS)

    def test_distinct_keys_are_all_granted(self):
        tokens = [f"S{1000 + i}" for i in range(self.WORKERS)]
        results = self.run_workers(tokens, at(12) + timedelta(seconds=1))

        self.assertEqual(results.count(GRANTED), self.WORKERS)
        self.assertEqual(len(self.engine.locks), 0)


if __name__ == '__main__':
    unittest.main()
