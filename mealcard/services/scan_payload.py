"""
Scan Payload — turns what a terminal scanned into (token, meal type).
QR payloads are JSON ({"universityId": ..., "date": ...}) or plain text.
"""

import json
import re
from datetime import date, time

from mealcard.errors import InvalidRequest
from mealcard.models.verification import MEAL_TYPES

MAX_TOKEN_LENGTH = 64
TOKEN_KEYS = ("universityId", "token", "uid")

DEFAULT_MEAL_SCHEDULE = {
    "breakfast": (time(6, 0), time(10, 0)),
    "lunch": (time(11, 30), time(14, 30)),
    "dinner": (time(17, 30), time(21, 0)),
}

_WHITESPACE = re.compile(r"\s+")


def normalize_token(raw):
    """Strip surrounding and internal whitespace; None if nothing usable is left."""
    if raw is None:
        return None
    token = _WHITESPACE.sub("", str(raw))
    if not token or len(token) > MAX_TOKEN_LENGTH:
        return None
    return token


def parse_meal_type(value):
    meal_type = str(value or "").strip().lower()
    if meal_type not in MEAL_TYPES:
        raise InvalidRequest(f"Unknown meal type: {value!r}")
    return meal_type


def parse_scan_payload(qr_data):
    """
    Returns (token, service_date or None).
    Raises InvalidRequest when no student identifier can be found.
    """
    if isinstance(qr_data, dict):
        parsed = qr_data
    elif isinstance(qr_data, str):
        text = qr_data.strip()
        if not text:
            raise InvalidRequest("qrData is required")
        try:
            parsed = json.loads(text)
        except ValueError:
            parsed = None
    elif isinstance(qr_data, int) and not isinstance(qr_data, bool):
        text, parsed = str(qr_data), None
    elif qr_data is None:
        raise InvalidRequest("qrData is required")
    else:
        raise InvalidRequest("qrData must be a string or an object")

    # Bare numbers and strings decode as JSON too; only objects carry fields
    if not isinstance(parsed, dict):
        token = normalize_token(text)
        if token is None:
            raise InvalidRequest("Invalid QR data - unusable identifier")
        return token, None

    raw_token = next((parsed[k] for k in TOKEN_KEYS if parsed.get(k)), None)
    # Nested objects, lists and booleans are not identifiers
    if isinstance(raw_token, bool) or not isinstance(raw_token, (str, int)):
        raw_token = None
    token = normalize_token(raw_token)
    if token is None:
        raise InvalidRequest("Invalid QR data - missing universityId")

    service_date = None
    if parsed.get("date"):
        try:
            service_date = date.fromisoformat(str(parsed["date"]))
        except ValueError:
            raise InvalidRequest(f"Invalid service date: {parsed['date']!r}")
    return token, service_date


def parse_meal_schedule(value):
    """Parses 'breakfast=06:00-10:00;lunch=11:30-14:30;dinner=17:30-21:00'."""
    if not value:
        return dict(DEFAULT_MEAL_SCHEDULE)

    schedule = {}
    for chunk in value.split(";"):
        if not chunk.strip():
            continue
        try:
            name, window = chunk.split("=", 1)
            start, end = window.split("-", 1)
            schedule[parse_meal_type(name)] = (
                time.fromisoformat(start.strip()),
                time.fromisoformat(end.strip()),
            )
        except ValueError as e:
            raise InvalidRequest(f"Bad meal schedule entry {chunk!r}: {e}")
    return schedule


def resolve_meal_type(local_now, schedule=None):
    """Meal whose serving window contains local_now (campus time)."""
    current = local_now.time()
    for meal_type, (start, end) in (schedule or DEFAULT_MEAL_SCHEDULE).items():
        if start <= current <= end:
            return meal_type
    raise InvalidRequest("Outside meal hours")
