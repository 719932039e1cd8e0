"""
Aggregation Reporter — read-only summaries computed from the ledger on demand.
Nothing here is cached or written back.
"""

import calendar
from datetime import date, timedelta
from sqlalchemy import func

from mealcard.errors import InvalidRequest, LedgerIntegrityError
from mealcard.extensions import db
from mealcard.models.verification import MEAL_TYPES, STATUS_VERIFIED, VerificationRecord


MAX_DAILY_RANGE_DAYS = 366


def _empty_counts():
    return {meal_type: 0 for meal_type in MEAL_TYPES}


def _check_range(start, end):
    if start > end:
        raise InvalidRequest(f"Start date {start} is after end date {end}")


def _check_meal(meal_type):
    if meal_type not in MEAL_TYPES:
        raise LedgerIntegrityError(f"Unknown meal type in ledger: {meal_type!r}")


def counts_by_meal(start, end):
    """Verified meals per meal type with service_date in [start, end]."""
    _check_range(start, end)
    rows = (
        db.session.query(VerificationRecord.meal_type, func.count(VerificationRecord.id))
        .filter(
            VerificationRecord.status == STATUS_VERIFIED,
            VerificationRecord.service_date >= start,
            VerificationRecord.service_date <= end,
        )
        .group_by(VerificationRecord.meal_type)
        .all()
    )

    counts = _empty_counts()
    for meal_type, count in rows:
        _check_meal(meal_type)
        counts[meal_type] = count
    return counts


def daily_counts(start, end):
    """Every day in range, including zero days, keyed by ISO date."""
    _check_range(start, end)
    if (end - start).days + 1 > MAX_DAILY_RANGE_DAYS:
        raise InvalidRequest(f"Daily report covers at most {MAX_DAILY_RANGE_DAYS} days")
    rows = (
        db.session.query(
            VerificationRecord.service_date,
            VerificationRecord.meal_type,
            func.count(VerificationRecord.id),
        )
        .filter(
            VerificationRecord.status == STATUS_VERIFIED,
            VerificationRecord.service_date >= start,
            VerificationRecord.service_date <= end,
        )
        .group_by(VerificationRecord.service_date, VerificationRecord.meal_type)
        .all()
    )

    days = {}
    for offset in range((end - start).days + 1):
        days[(start + timedelta(days=offset)).isoformat()] = _empty_counts()

    for service_date, meal_type, count in rows:
        _check_meal(meal_type)
        days[service_date.isoformat()][meal_type] = count
    return days


def monthly_counts(year):
    _check_year(year)
    start, end = date(year, 1, 1), date(year, 12, 31)
    months = {month: _empty_counts() for month in range(1, 13)}

    # Grouped in Python so the same query works on SQLite and PostgreSQL
    for month_key, counts in daily_counts(start, end).items():
        month = date.fromisoformat(month_key).month
        for meal_type, count in counts.items():
            months[month][meal_type] += count
    return months


def _check_year(year):
    if not 1 <= year <= 9999:
        raise InvalidRequest(f"Year out of range: {year}")


def month_bounds(month, year):
    _check_year(year)
    if not 1 <= month <= 12:
        raise InvalidRequest(f"Month must be 1-12, got {month}")
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, 1), date(year, month, last_day)


def student_grid(token, month, year):
    """
    (day, meal_type) -> status for one student's month.
    Days/meals with no record are simply absent.
    """
    start, end = month_bounds(month, year)
    records = (
        VerificationRecord.query
        .filter(
            VerificationRecord.token == token,
            VerificationRecord.service_date >= start,
            VerificationRecord.service_date <= end,
        )
        .all()
    )

    grid = {}
    for record in records:
        _check_meal(record.meal_type)
        grid[(record.service_date.day, record.meal_type)] = record.status
    return grid


def statistics(on_date, denials):
    counts = counts_by_meal(on_date, on_date)
    return {
        "date": on_date.isoformat(),
        "totalVerifications": sum(counts.values()),
        "mealCounts": counts,
        "totalDenials": denials.count_active(),
    }
