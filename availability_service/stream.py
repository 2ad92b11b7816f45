# availability_service/stream.py
"""Redis stream consumer feeding booking events into availability."""
from dataclasses import dataclass
from datetime import date
from typing import Optional
import logging
import threading

import redis

from hotel_common.web import parse_ymd
from availability_service.app import update_availability_for_booking

STREAM_KEY = "booking-events"
GROUP = "availability"
CONSUMER = "availability-1"
BLOCK_MS = 250
BATCH = 10

logger = logging.getLogger("servico-availability.stream")


@dataclass
class BookingEvent:
    booking_id: Optional[int]
    room_id: str
    start_date: date
    end_date: date
    event_type: str


def _parse_int(s):
    try:
        return int(s)
    except (TypeError, ValueError):
        return None


def parse_event(fields):
    """Build a BookingEvent from the string map written by the booking service.

    Dates are required; a malformed or missing date raises.
    """
    return BookingEvent(
        booking_id=_parse_int(fields.get("bookingId")),
        room_id=fields.get("roomId", ""),
        start_date=parse_ymd(fields["startDate"]),
        end_date=parse_ymd(fields["endDate"]),
        event_type=fields.get("eventType", ""),
    )


def ensure_group(client):
    try:
        client.xgroup_create(STREAM_KEY, GROUP, id="$", mkstream=True)
        logger.info(f"Created consumer group {GROUP} on {STREAM_KEY}")
    except redis.exceptions.ResponseError as e:
        if "BUSYGROUP" not in str(e):
            raise
        # group already exists


def handle_message(app, stream_id, fields):
    """Apply one stream record. Failures are logged, never raised."""
    try:
        event = parse_event(fields)
        logger.info(f"Received '{event.event_type}' for booking ID {event.booking_id} (streamId {stream_id})")
        if event.event_type != "BOOKING_CREATED":
            logger.debug(f"Ignoring eventType '{event.event_type}' (streamId {stream_id})")
            return False
        with app.app_context():
            update_availability_for_booking(event, stream_id)
        return True
    except Exception as e:
        logger.warning(f"Failed to process stream message {stream_id}: {e!r}")
        return False


def poll_once(app, client):
    """Read one batch for this consumer, handle and ack each record."""
    batches = client.xreadgroup(GROUP, CONSUMER, {STREAM_KEY: ">"}, count=BATCH, block=BLOCK_MS)
    handled = 0
    for _stream, entries in batches or []:
        for stream_id, fields in entries:
            handle_message(app, stream_id, fields)
            client.xack(STREAM_KEY, GROUP, stream_id)
            handled += 1
    return handled


def consume(app, client, stop_event):
    ensure_group(client)
    logger.info(f"Consuming {STREAM_KEY} as {GROUP}/{CONSUMER}")
    while not stop_event.is_set():
        try:
            poll_once(app, client)
        except redis.exceptions.RedisError as e:
            logger.warning(f"[STREAM-ERROR] {e!r}")
            stop_event.wait(1.0)


def start_consumer(app, client):
    """Run the consumer on a daemon thread; set the returned event to stop it."""
    stop_event = threading.Event()

    def _run():
        try:
            consume(app, client, stop_event)
        except redis.exceptions.RedisError as e:
            logger.error(f"[STREAM-ERROR] consumer stopped: {e!r}")

    t = threading.Thread(target=_run, name="booking-events-consumer", daemon=True)
    t.start()
    return t, stop_event
