from datetime import date

import pytest
import redis

from availability_service import app as availability
from availability_service import stream

FIELDS = {
    "bookingId": "42",
    "roomId": "deluxe-101",
    "startDate": "2025-01-20",
    "endDate": "2025-01-22",
    "eventType": "BOOKING_CREATED",
}


class FakeStreamClient:
    def __init__(self, batches=None, group_error=None):
        self.batches = list(batches or [])
        self.group_error = group_error
        self.groups = []
        self.acked = []

    def xgroup_create(self, key, group, id="$", mkstream=False):
        if self.group_error:
            raise self.group_error
        self.groups.append((key, group, id, mkstream))

    def xreadgroup(self, group, consumer, streams, count=None, block=None):
        if self.batches:
            return [(stream.STREAM_KEY, self.batches.pop(0))]
        return []

    def xack(self, key, group, *ids):
        self.acked.extend(ids)


def test_parse_event():
    event = stream.parse_event(FIELDS)
    assert event.booking_id == 42
    assert event.start_date == date(2025, 1, 20)
    assert event.end_date == date(2025, 1, 22)
    assert event.event_type == "BOOKING_CREATED"


def test_parse_event_tolerates_bad_booking_id():
    assert stream.parse_event(dict(FIELDS, bookingId="x")).booking_id is None


def test_ensure_group_from_latest():
    client = FakeStreamClient()
    stream.ensure_group(client)
    assert client.groups == [("booking-events", "availability", "$", True)]


def test_ensure_group_tolerates_existing_group():
    err = redis.exceptions.ResponseError("BUSYGROUP Consumer Group name already exists")
    stream.ensure_group(FakeStreamClient(group_error=err))


def test_ensure_group_propagates_other_errors():
    with pytest.raises(redis.exceptions.ResponseError):
        stream.ensure_group(FakeStreamClient(group_error=redis.exceptions.ResponseError("WRONGTYPE")))


def test_poll_applies_and_acks(availability_app):
    client = FakeStreamClient(batches=[[("1-0", FIELDS), ("2-0", dict(FIELDS, eventType="BOOKING_CANCELLED"))]])
    assert stream.poll_once(availability_app, client) == 2
    assert client.acked == ["1-0", "2-0"]
    booked = [a.booked_rooms for a in availability.Availability.query.all()]
    assert booked == [1, 1, 1]


def test_bad_message_is_logged_and_skipped(availability_app, caplog):
    client = FakeStreamClient(batches=[[("3-0", dict(FIELDS, startDate="nope")), ("4-0", FIELDS)]])
    stream.poll_once(availability_app, client)
    assert client.acked == ["3-0", "4-0"]
    assert "Failed to process stream message 3-0" in caplog.text
    assert availability.ProcessedEvent.query.filter_by(stream_id="4-0").count() == 1


def test_redelivered_message_is_idempotent(availability_app):
    client = FakeStreamClient(batches=[[("5-0", FIELDS)], [("5-0", FIELDS)]])
    stream.poll_once(availability_app, client)
    stream.poll_once(availability_app, client)
    booked = [a.booked_rooms for a in availability.Availability.query.all()]
    assert booked == [1, 1, 1]


def test_parse_event_rejects_non_calendar_forms():
    with pytest.raises(ValueError):
        stream.parse_event(dict(FIELDS, startDate="20250120"))
    with pytest.raises(ValueError):
        stream.parse_event(dict(FIELDS, endDate="2025-W04-3"))
