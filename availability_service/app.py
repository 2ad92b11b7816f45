# availability_service/app.py
from flask import Flask, request, jsonify, current_app
from flask_sqlalchemy import SQLAlchemy
from sqlalchemy import UniqueConstraint
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError
from datetime import date, timedelta
import logging, os
import redis
from prometheus_client import Counter, generate_latest, CONTENT_TYPE_LATEST

from hotel_common.web import (
    BasicAuthUser, emit_audit, now_iso, openapi_document, parse_date_range,
    register_error_handlers, register_request_counter, require_basic_auth,
    require_text, setup_logging,
)

# ---------- CONFIG ----------
SQLITE_PATH = os.environ.get("SQLITE_PATH", "sqlite:///availability.db")
REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379/0")
REDIS_TIMEOUT_S = float(os.environ.get("REDIS_TIMEOUT_S", "2"))
APP_USER = os.environ.get("APP_USER", "user")
APP_PASSWORD = os.environ.get("APP_PASSWORD", "password")  # replace in production
PORT = int(os.environ.get("PORT", "8086"))
STREAM_CONSUMER_ENABLED = os.environ.get("STREAM_CONSUMER_ENABLED", "1") == "1"

SERVICE = "servico-availability"
GROUP = "availability"
DEFAULT_TOTAL_ROOMS = 5
MAX_ATTEMPTS = 3

# ---------- LOGGING ----------
logger = logging.getLogger(SERVICE)

# ---------- METRICS ----------
REQ_COUNTER = Counter("availability_requests_total", "Total HTTP requests", ["method", "endpoint", "status"])
EVENTS_PROCESSED = Counter("availability_events_processed_total", "Booking events applied to availability")
EVENTS_DUPLICATE = Counter("availability_events_duplicate_total", "Booking events skipped as already processed")

db = SQLAlchemy()

# ---------- MODELS ----------
class Availability(db.Model):
    __tablename__ = "availability"
    id = db.Column(db.Integer, primary_key=True)
    room_id = db.Column(db.String, nullable=False)
    available_date = db.Column(db.Date, nullable=False)
    total_rooms = db.Column(db.Integer, nullable=False)
    booked_rooms = db.Column(db.Integer, nullable=False)
    version = db.Column(db.Integer, nullable=False)
    __table_args__ = (UniqueConstraint("room_id", "available_date", name="uq_room_day"),)
    __mapper_args__ = {"version_id_col": version}

    def to_dict(self):
        return {
            "id": self.id,
            "roomId": self.room_id,
            "availableDate": self.available_date.isoformat(),
            "totalRooms": self.total_rooms,
            "bookedRooms": self.booked_rooms,
            "version": self.version,
        }


class ProcessedEvent(db.Model):
    __tablename__ = "processed_events"
    id = db.Column(db.Integer, primary_key=True)
    consumer_group = db.Column(db.String, nullable=False)
    stream_id = db.Column(db.String, nullable=False)
    __table_args__ = (UniqueConstraint("consumer_group", "stream_id", name="uq_group_stream_id"),)


class AvailabilityUpdateError(Exception):
    pass

# ---------- SERVICE ----------
def check_availability(room_id, start, end):
    return Availability.query.filter(
        Availability.room_id == room_id,
        Availability.available_date >= start,
        Availability.available_date <= end,
    ).order_by(Availability.available_date).all()


def already_processed(stream_id):
    return db.session.query(
        ProcessedEvent.query.filter_by(consumer_group=GROUP, stream_id=stream_id).exists()
    ).scalar()


def _book_days(event):
    day = event.start_date
    while day <= event.end_date:
        row = Availability.query.filter_by(room_id=event.room_id, available_date=day).first()
        if row is None:
            row = Availability(room_id=event.room_id, available_date=day,
                               total_rooms=DEFAULT_TOTAL_ROOMS, booked_rooms=0)
            db.session.add(row)
        row.booked_rooms += 1
        db.session.flush()
        day += timedelta(days=1)


def update_availability_for_booking(event, stream_id):
    """Apply a BOOKING_CREATED event: one more booked room per night.

    Idempotent per stream id. Concurrent writers are detected through the
    row version; the whole update is retried on conflict and gives up after
    MAX_ATTEMPTS. Returns False when the stream id was already processed.
    """
    for attempt in range(1, MAX_ATTEMPTS + 1):
        if already_processed(stream_id):
            EVENTS_DUPLICATE.inc()
            logger.info(f"Skip duplicate streamId {stream_id}")
            return False
        try:
            _book_days(event)
            db.session.add(ProcessedEvent(consumer_group=GROUP, stream_id=stream_id))
            db.session.commit()
        except (StaleDataError, IntegrityError) as e:
            db.session.rollback()
            logger.info(f"Optimistic lock on {event.room_id} (attempt {attempt}/{MAX_ATTEMPTS}): {type(e).__name__}")
            continue
        EVENTS_PROCESSED.inc()
        emit_audit(SERVICE, "AVAILABILITY_UPDATED", {
            "booking_id": event.booking_id, "stream_id": stream_id, "room_id": event.room_id,
        })
        logger.info(f"Processed booking {event.booking_id} (streamId {stream_id}) "
                    f"from {event.start_date} to {event.end_date}")
        return True
    raise AvailabilityUpdateError(
        f"Failed to persist availability for {event.room_id} {event.start_date}..{event.end_date}")


def auth_user():
    return current_app.extensions["auth_user"]


OPENAPI_PATHS = {
    "/api/availability/{roomId}": {"get": {
        "summary": "Availability of a room per night",
        "parameters": [
            {"name": "roomId", "in": "path", "required": True, "schema": {"type": "string"}},
            {"name": "startDate", "in": "query", "required": True, "schema": {"type": "string", "format": "date"}},
            {"name": "endDate", "in": "query", "required": True, "schema": {"type": "string", "format": "date"}},
        ],
        "responses": {"200": {"description": "OK"}, "400": {"description": "Invalid parameters"}},
    }},
}

# ---------- APP ----------
def create_app(config=None):
    app = Flask(__name__)
    app.config["SQLALCHEMY_DATABASE_URI"] = SQLITE_PATH
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False
    app.config["REDIS_URL"] = REDIS_URL
    app.config["REDIS_TIMEOUT_S"] = REDIS_TIMEOUT_S
    app.config["APP_USER"] = APP_USER
    app.config["APP_PASSWORD"] = APP_PASSWORD
    if config:
        app.config.update(config)

    db.init_app(app)
    client = app.config.get("REDIS_CLIENT")
    if client is None:
        client = redis.Redis.from_url(
            app.config["REDIS_URL"],
            decode_responses=True,
            socket_connect_timeout=app.config["REDIS_TIMEOUT_S"],
            socket_timeout=app.config["REDIS_TIMEOUT_S"],
        )
    app.extensions["redis"] = client
    app.extensions["auth_user"] = BasicAuthUser(app.config["APP_USER"], app.config["APP_PASSWORD"])

    register_error_handlers(app)
    register_request_counter(app, REQ_COUNTER)
    protected = require_basic_auth(auth_user, realm="availability-service")

    # ---------- ROUTES ----------
    @app.route("/health", methods=["GET"])
    def health():
        return jsonify({"status": "ok", "time": now_iso()}), 200

    @app.route("/metrics")
    def metrics():
        return generate_latest(), 200, {"Content-Type": CONTENT_TYPE_LATEST}

    @app.route("/v3/api-docs", methods=["GET"])
    def api_docs():
        return jsonify(openapi_document("Availability Service API", "Room availability per night", OPENAPI_PATHS)), 200

    @app.route("/api/availability/<room_id>", methods=["GET"])
    @protected
    def get_availability(room_id):
        require_text("roomId", room_id)
        start, end = parse_date_range(request.args)
        return jsonify([a.to_dict() for a in check_availability(room_id, start, end)]), 200

    return app

# ---------- INIT ----------
def seed():
    if Availability.query.count() == 0:
        db.session.add(Availability(room_id="deluxe-101", available_date=date.today() + timedelta(days=10),
                                    total_rooms=DEFAULT_TOTAL_ROOMS, booked_rooms=1))
        db.session.commit()
        logger.info("Initial availability data created.")


def main():
    from availability_service.stream import start_consumer

    setup_logging()
    app = create_app()
    with app.app_context():
        db.create_all()
        seed()
    if STREAM_CONSUMER_ENABLED:
        start_consumer(app, app.extensions["redis"])
    app.run(host="0.0.0.0", port=PORT)


if __name__ == "__main__":
    main()
