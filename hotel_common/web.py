# hotel_common/web.py
from flask import request, jsonify, abort, make_response
from werkzeug.exceptions import HTTPException
from werkzeug.security import generate_password_hash, check_password_hash
from datetime import datetime, timezone
from functools import wraps
import logging
import json

LOG_FORMAT = "%(levelname)s:%(asctime)s:%(name)s:%(message)s"
LOG_DATEFMT = "%Y-%m-%dT%H:%M:%S"

# ---------------------------- LOGGING ---------------------------- #
def setup_logging(level=logging.INFO):
    logging.basicConfig(level=level, format=LOG_FORMAT, datefmt=LOG_DATEFMT)


audit_logger = logging.getLogger("audit")


def now_iso():
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def emit_audit(service, event_type, details):
    audit_logger.info(json.dumps({
        "timestamp_utc": now_iso(),
        "level": "AUDIT",
        "event_type": event_type,
        "service": service,
        "details": details
    }))

# ---------------------------- SECURITY ---------------------------- #
class BasicAuthUser:
    def __init__(self, username, password):
        self.username = username
        self.password_hash = generate_password_hash(password)

    def check(self, username, password):
        if username != self.username or password is None:
            return False
        return check_password_hash(self.password_hash, password)


def require_basic_auth(user_getter, realm="Realm"):
    def decorator(f):
        @wraps(f)
        def decorated(*a, **kw):
            auth = request.authorization
            user = user_getter()
            if auth is None or auth.type != "basic" or not user.check(auth.username, auth.password):
                resp = make_response(jsonify({"error": "Unauthorized"}), 401)
                resp.headers["WWW-Authenticate"] = f'Basic realm="{realm}"'
                abort(resp)
            return f(*a, **kw)
        return decorated
    return decorator

# ---------------------------- VALIDATION ---------------------------- #
def bad_request(**body):
    abort(make_response(jsonify(body), 400))


def require_text(name, value):
    if value is None or not value.strip():
        bad_request(errors={name: "must not be blank"})
    return value


def parse_ymd(raw):
    # strict YYYY-MM-DD, no basic or week forms
    if len(raw) != 10:
        raise ValueError(f"'{raw}' is not YYYY-MM-DD")
    return datetime.strptime(raw, "%Y-%m-%d").date()


def parse_iso_date(name, raw):
    if raw is None or raw == "":
        bad_request(errors={name: "must not be null"})
    try:
        return parse_ymd(raw)
    except ValueError as e:
        bad_request(error="Invalid parameter type", details=f"{name}: {e}")


def parse_date_range(args):
    # inclusive range, equal dates are accepted
    start = parse_iso_date("startDate", args.get("startDate"))
    end = parse_iso_date("endDate", args.get("endDate"))
    if end < start:
        bad_request(error="endDate must be on or after startDate")
    return start, end


def register_error_handlers(app):
    @app.errorhandler(HTTPException)
    def _http_error(e):
        # responses built with abort(make_response(...)) pass through untouched
        if e.response is not None:
            return e.response
        return jsonify({"error": e.description}), e.code

# ---------------------------- METRICS ---------------------------- #
def register_request_counter(app, counter):
    @app.after_request
    def _count_req(response):
        # endpoint may be None for 404s
        endpoint = request.url_rule.rule if request.url_rule else "unmatched"
        counter.labels(method=request.method, endpoint=endpoint, status=str(response.status_code)).inc()
        return response

# ---------------------------- OPENAPI ---------------------------- #
def openapi_document(title, description, paths):
    return {
        "openapi": "3.0.1",
        "info": {"title": title, "version": "v1", "description": description},
        "components": {"securitySchemes": {"basicAuth": {"type": "http", "scheme": "basic"}}},
        "security": [{"basicAuth": []}],
        "paths": paths,
    }
