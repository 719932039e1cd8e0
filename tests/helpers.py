from datetime import datetime, timezone

from mealcard.app import create_app

TEST_CONFIG = {
    "TESTING": True,
    "SQLALCHEMY_DATABASE_URI": "sqlite://",
    "CAMPUS_TIMEZONE": "UTC",
    "REPLAY_WINDOW_MINUTES": 10,
    "REPLAY_REVOKES_GRANT": True,
    "DENIAL_SERVICE_URL": None,
    "RFID_SERIAL_PORT": None,
    "LOG_LEVEL": "WARNING",
}


def make_app(**overrides):
    config = dict(TEST_CONFIG)
    config.update(overrides)
    return create_app(config)


def at(hour, minute=0, second=0, day=3, month=3, year=2025):
    return datetime(year, month, day, hour, minute, second, tzinfo=timezone.utc)
