import base64

import pytest
import redis

from booking_service import app as booking
from availability_service import app as availability

AUTH = {"Authorization": "Basic " + base64.b64encode(b"user:password").decode()}


class RecordingRedis:
    """Stands in for the redis client: keeps xadd calls, optionally fails."""

    def __init__(self, fail=False):
        self.fail = fail
        self.added = []

    def xadd(self, key, fields):
        if self.fail:
            raise redis.exceptions.ConnectionError("Connection refused")
        self.added.append((key, dict(fields)))
        return f"{len(self.added)}-0"


@pytest.fixture
def stream():
    return RecordingRedis()


@pytest.fixture
def booking_app(stream):
    app = booking.create_app({
        "TESTING": True,
        "SQLALCHEMY_DATABASE_URI": "sqlite://",
        "REDIS_CLIENT": stream,
    })
    with app.app_context():
        booking.db.create_all()
        yield app
        booking.db.session.remove()
        booking.db.drop_all()


@pytest.fixture
def booking_client(booking_app):
    return booking_app.test_client()


@pytest.fixture
def availability_app():
    app = availability.create_app({
        "TESTING": True,
        "SQLALCHEMY_DATABASE_URI": "sqlite://",
        "REDIS_CLIENT": RecordingRedis(),
    })
    with app.app_context():
        availability.db.create_all()
        yield app
        availability.db.session.remove()
        availability.db.drop_all()


@pytest.fixture
def availability_client(availability_app):
    return availability_app.test_client()
