# booking_service/app.py
from flask import Flask, request, jsonify, current_app
from flask_sqlalchemy import SQLAlchemy
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
SQLITE_PATH = os.environ.get("SQLITE_PATH", "sqlite:///booking.db")
REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379/0")
REDIS_TIMEOUT_S = float(os.environ.get("REDIS_TIMEOUT_S", "2"))
APP_USER = os.environ.get("APP_USER", "user")
APP_PASSWORD = os.environ.get("APP_PASSWORD", "password")  # replace in production
PORT = int(os.environ.get("PORT", "8085"))

STREAM_KEY = "booking-events"
SERVICE = "servico-booking"

# ---------- LOGGING ----------
logger = logging.getLogger(SERVICE)

# ---------- METRICS ----------
REQ_COUNTER = Counter("booking_requests_total", "Total HTTP requests", ["method", "endpoint", "status"])
BOOKINGS_CREATED = Counter("bookings_created_total", "Total bookings created")
EVENTS_PUBLISH_FAILED = Counter("booking_events_publish_failed_total", "Booking events that could not be published")

db = SQLAlchemy()

# ---------- MODELS ----------
class Booking(db.Model):
    __tablename__ = "bookings"
    id = db.Column(db.Integer, primary_key=True)
    room_id = db.Column(db.String, nullable=False, index=True)
    start_date = db.Column(db.Date, nullable=False)
    end_date = db.Column(db.Date, nullable=False)
    status = db.Column(db.String, nullable=False, default="CREATED")

    def to_dict(self):
        return {
            "id": self.id,
            "roomId": self.room_id,
            "startDate": self.start_date.isoformat(),
            "endDate": self.end_date.isoformat(),
            "status": self.status,
        }

# ---------- HELPERS ----------
def redis_client():
    return current_app.extensions["redis"]


def auth_user():
    return current_app.extensions["auth_user"]


def publish_booking_created(booking):
    """Append a BOOKING_CREATED record to the booking stream.

    A failed publish is logged and counted; the booking itself stays
    committed.
    """
    fields = {
        "bookingId": str(booking.id),
        "roomId": booking.room_id,
        "startDate": booking.start_date.isoformat(),
        "endDate": booking.end_date.isoformat(),
        "eventType": "BOOKING_CREATED",
    }
    try:
        redis_client().xadd(STREAM_KEY, fields)
        logger.info(f"Published event to {STREAM_KEY} for booking {booking.id}")
        return True
    except redis.exceptions.RedisError as e:
        EVENTS_PUBLISH_FAILED.inc()
        logger.warning(f"Failed to publish to Redis stream {STREAM_KEY}: {e!r}")
        return False


def create_booking(room_id, start, end):
    booking = Booking(room_id=room_id, start_date=start, end_date=end, status="CREATED")
    db.session.add(booking)
    db.session.commit()
    BOOKINGS_CREATED.inc()
    emit_audit(SERVICE, "BOOKING_CREATED", {"booking_id": booking.id, "room_id": room_id})
    publish_booking_created(booking)
    return booking


def bookings_by_room(room_id):
    return Booking.query.filter_by(room_id=room_id).order_by(Booking.id).all()


OPENAPI_PATHS = {
    "/api/bookings": {"post": {
        "summary": "Create a booking",
        "parameters": [
            {"name": "roomId", "in": "query", "required": True, "schema": {"type": "string"}},
            {"name": "startDate", "in": "query", "required": True, "schema": {"type": "string", "format": "date"}},
            {"name": "endDate", "in": "query", "required": True, "schema": {"type": "string", "format": "date"}},
        ],
        "responses": {"201": {"description": "Created"}, "400": {"description": "Invalid parameters"}},
    }},
    "/api/bookings/room/{roomId}": {"get": {
        "summary": "List bookings for a room",
        "parameters": [{"name": "roomId", "in": "path", "required": True, "schema": {"type": "string"}}],
        "responses": {"200": {"description": "OK"}},
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
    protected = require_basic_auth(auth_user, realm="booking-service")

    # ---------- ROUTES ----------
    @app.route("/health", methods=["GET"])
    def health():
        return jsonify({"status": "ok", "time": now_iso()}), 200

    @app.route("/metrics")
    def metrics():
        return generate_latest(), 200, {"Content-Type": CONTENT_TYPE_LATEST}

    @app.route("/v3/api-docs", methods=["GET"])
    def api_docs():
        return jsonify(openapi_document("Booking Service API", "Create and list bookings", OPENAPI_PATHS)), 200

    @app.route("/api/bookings", methods=["POST"])
    @protected
    def post_booking():
        room_id = require_text("roomId", request.args.get("roomId"))
        start, end = parse_date_range(request.args)
        booking = create_booking(room_id, start, end)
        return jsonify(booking.to_dict()), 201

    @app.route("/api/bookings/room/<room_id>", methods=["GET"])
    @protected
    def list_bookings(room_id):
        require_text("roomId", room_id)
        return jsonify([b.to_dict() for b in bookings_by_room(room_id)]), 200

    return app

# ---------- INIT ----------
def seed():
    if Booking.query.count() == 0:
        today = date.today()
        db.session.add(Booking(room_id="deluxe-101", start_date=today + timedelta(days=10),
                               end_date=today + timedelta(days=12), status="CREATED"))
        db.session.commit()
        logger.info("Initial booking data created.")


def main():
    setup_logging()
    app = create_app()
    with app.app_context():
        db.create_all()
        seed()
    app.run(host="0.0.0.0", port=PORT)


if __name__ == "__main__":
    main()
