"""
Verification Engine — turns a scan into a granted / denied / unavailable outcome.

Policy per (token, meal type, service date):
    no record                       -> grant, record verified
    verified, inside replay window  -> deny duplicate, record downgraded to failed
    verified, outside replay window -> deny already served, record untouched
    failed after a grant            -> deny already served
    failed, never granted           -> deny duplicate inside the window, grant after it
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from mealcard.errors import InvalidRequest, LedgerIntegrityError, VerificationUnavailable
from mealcard.extensions import db
from mealcard.models.verification import (
    MEAL_TYPES,
    RECORD_STATUSES,
    STATUS_FAILED,
    STATUS_VERIFIED,
    VerificationAttempt,
    VerificationRecord,
    as_utc,
)
from mealcard.services.denials import DenialList
from mealcard.services.locks import KeyedLock
from mealcard.services.scan_payload import normalize_token, parse_meal_type

logger = logging.getLogger(__name__)

REPLAY_WINDOW = timedelta(minutes=10)

GRANTED = "granted"
DENIED = "denied"
UNAVAILABLE = "unavailable"

REASON_ACCESS_DENIED = "access_denied"
REASON_DUPLICATE = "duplicate_attempt"
REASON_ALREADY_SERVED = "already_served"
REASON_UNAVAILABLE = "unavailable"

REASON_MESSAGES = {
    REASON_DUPLICATE: "duplicate attempt within replay window",
    REASON_ALREADY_SERVED: "already served",
    REASON_UNAVAILABLE: "verification unavailable",
}


@dataclass(frozen=True)
class VerificationRequest:
    token: str
    meal_type: str
    requested_at: datetime


@dataclass(frozen=True)
class Outcome:
    status: str
    reason: str = None
    message: str = ""
    record: dict = None

    @property
    def granted(self):
        return self.status == GRANTED


class VerificationEngine:
    def __init__(self, denials=None, replay_window=REPLAY_WINDOW, campus_tz=timezone.utc,
                 lock_timeout=5.0, revoke_on_replay=True, locks=None):
        self.denials = denials or DenialList()
        self.replay_window = replay_window
        self.campus_tz = campus_tz
        self.lock_timeout = lock_timeout
        self.revoke_on_replay = revoke_on_replay
        self.locks = locks or KeyedLock()

    def now(self):
        return datetime.now(self.campus_tz)

    def localize(self, moment):
        # Naive timestamps are campus wall-clock time
        if moment.tzinfo is None:
            return moment.replace(tzinfo=self.campus_tz)
        return moment.astimezone(self.campus_tz)

    def service_date(self, moment):
        return self.localize(moment).date()

    def verify(self, request):
        token = normalize_token(request.token)
        if token is None:
            raise InvalidRequest("Missing or malformed student identifier")
        meal_type = parse_meal_type(request.meal_type)

        local = self.localize(request.requested_at)
        service_date = local.date()
        at = local.astimezone(timezone.utc)
        key = (token, meal_type, service_date)

        try:
            denial_reason = self.denials.find_active(token, meal_type, service_date)
            with self.locks.hold(key, timeout=self.lock_timeout):
                if denial_reason is not None:
                    return self._record_denial(key, at, denial_reason)
                return self._decide(key, at)
        except (VerificationUnavailable, OperationalError, PoolTimeoutError) as e:
            db.session.rollback()
            logger.warning("Verification unavailable for %s/%s on %s: %s", token, meal_type, service_date, e)
            return Outcome(UNAVAILABLE, REASON_UNAVAILABLE, REASON_MESSAGES[REASON_UNAVAILABLE])
        except LedgerIntegrityError:
            db.session.rollback()
            logger.exception("Ledger integrity error for %s/%s on %s", token, meal_type, service_date)
            raise

    def _current_record(self, key):
        token, meal_type, service_date = key
        record = (
            VerificationRecord.query
            .filter_by(token=token, meal_type=meal_type, service_date=service_date)
            .with_for_update()
            .first()
        )
        if record is not None and (record.status not in RECORD_STATUSES or record.meal_type not in MEAL_TYPES):
            raise LedgerIntegrityError(
                f"Record {record.id} has status={record.status!r} meal_type={record.meal_type!r}"
            )
        return record

    def _decide(self, key, at):
        # Second pass only happens after losing an insert race to another writer
        for _ in range(2):
            record = self._current_record(key)
            outcome = self._apply_policy(key, record, at)
            self._log_attempt(key, at, outcome)
            try:
                db.session.commit()
            except IntegrityError:
                db.session.rollback()
                logger.info("Concurrent insert for %s; re-reading ledger", key)
                continue
            logger.info("%s %s/%s on %s (%s)", outcome.status, key[0], key[1], key[2], outcome.reason or "ok")
            return outcome
        raise VerificationUnavailable(f"Could not settle ledger record for {key}")

    def _apply_policy(self, key, record, at):
        token, meal_type, service_date = key

        if record is None:
            record = VerificationRecord(
                token=token,
                meal_type=meal_type,
                service_date=service_date,
                status=STATUS_VERIFIED,
                timestamp=at,
                served_at=at,
            )
            db.session.add(record)
            return self._granted(record)

        within_window = at - as_utc(record.timestamp) < self.replay_window

        if record.status == STATUS_VERIFIED:
            if not within_window:
                return self._denied(REASON_ALREADY_SERVED, record)
            if self.revoke_on_replay:
                record.status = STATUS_FAILED
                record.timestamp = at
            return self._denied(REASON_DUPLICATE, record)

        # status == failed
        if record.served_at is not None:
            return self._denied(REASON_ALREADY_SERVED, record)
        if within_window:
            record.timestamp = at
            return self._denied(REASON_DUPLICATE, record)

        record.status = STATUS_VERIFIED
        record.timestamp = at
        record.served_at = at
        return self._granted(record)

    def _record_denial(self, key, at, reason):
        token, meal_type, service_date = key
        record = self._current_record(key)
        if record is None:
            record = VerificationRecord(
                token=token,
                meal_type=meal_type,
                service_date=service_date,
                status=STATUS_FAILED,
                timestamp=at,
            )
            db.session.add(record)

        outcome = Outcome(DENIED, REASON_ACCESS_DENIED, reason, record.to_dict())
        self._log_attempt(key, at, outcome)
        try:
            db.session.commit()
        except IntegrityError:
            # Someone else created the record first; keep theirs, log ours
            db.session.rollback()
            self._log_attempt(key, at, outcome)
            db.session.commit()
        logger.info("denied %s/%s on %s: %s", token, meal_type, service_date, reason)
        return outcome

    def _log_attempt(self, key, at, outcome):
        token, meal_type, service_date = key
        db.session.add(VerificationAttempt(
            token=token,
            meal_type=meal_type,
            service_date=service_date,
            outcome=outcome.status,
            reason=outcome.reason,
            attempted_at=at,
        ))

    def _granted(self, record):
        return Outcome(
            GRANTED,
            None,
            f"Meal verified for {record.token} ({record.meal_type})",
            record.to_dict(),
        )

    def _denied(self, reason, record):
        return Outcome(DENIED, reason, REASON_MESSAGES[reason], record.to_dict())


def config_flag(value):
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def engine_from_config(config):
    tz_name = config.get("CAMPUS_TIMEZONE") or "UTC"
    campus_tz = timezone.utc if tz_name.upper() == "UTC" else ZoneInfo(tz_name)
    timeout = float(config.get("VERIFICATION_TIMEOUT", 5.0))
    return VerificationEngine(
        denials=DenialList(config.get("DENIAL_SERVICE_URL"), timeout=timeout),
        replay_window=timedelta(minutes=float(config.get("REPLAY_WINDOW_MINUTES", 10))),
        campus_tz=campus_tz,
        lock_timeout=timeout,
        revoke_on_replay=config_flag(config.get("REPLAY_REVOKES_GRANT", True)),
    )
