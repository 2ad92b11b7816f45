# smoke/availability_booking_smoke.py
# Smoke/load test: each virtual user books deluxe-101 and then reads its
# availability, checking the status codes, once per second for the run.
import argparse
import logging
import os
import sys
import threading
import time
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor

import requests

# Base URLs from the environment (fallback to localhost for local runs)
BOOKING = os.environ.get("BASE_URL_BOOKING", "http://localhost:8085")
AVAIL = os.environ.get("BASE_URL_AVAIL", "http://localhost:8086")
TIMEOUT_S = float(os.environ.get("SMOKE_TIMEOUT_S", "5"))

VUS = 10
DURATION_S = 30.0
SLEEP_S = 1.0

# "user:password" base64
AUTH = "Basic dXNlcjpwYXNzd29yZA=="
HEADERS = {"Authorization": AUTH}

ROOM_ID = "deluxe-101"
START = "2025-01-20"
END = "2025-01-22"

BOOKING_CHECK = "booking 201"
AVAIL_CHECK = "availability 200"

logger = logging.getLogger("smoke")


class CheckStats:
    """Pass/fail counters per check name, shared by all virtual users."""

    def __init__(self):
        self._lock = threading.Lock()
        self.passes = defaultdict(int)
        self.fails = defaultdict(int)
        self.iterations = 0
        self.requests = 0

    def record(self, name, ok):
        with self._lock:
            if ok:
                self.passes[name] += 1
            else:
                self.fails[name] += 1

    def count_request(self):
        with self._lock:
            self.requests += 1

    def count_iteration(self):
        with self._lock:
            self.iterations += 1

    @property
    def failed(self):
        return sum(self.fails.values())

    def names(self):
        return sorted(set(self.passes) | set(self.fails))


def send(session, method, url, stats, **kw):
    stats.count_request()
    try:
        return session.request(method, url, headers=HEADERS, timeout=TIMEOUT_S, **kw)
    except requests.RequestException as e:
        logger.warning(f"[{method}] {url} failed: {e}")
        return None


def check(stats, response, name, expected_status):
    ok = response is not None and response.status_code == expected_status
    stats.record(name, ok)
    return ok


def iteration(session, stats, booking_url=BOOKING, avail_url=AVAIL):
    """One pass of a virtual user: create a booking, then read availability."""
    b = send(session, "POST", f"{booking_url}/api/bookings", stats,
             params={"roomId": ROOM_ID, "startDate": START, "endDate": END})
    check(stats, b, BOOKING_CHECK, 201)

    a = send(session, "GET", f"{avail_url}/api/availability/{ROOM_ID}", stats,
             params={"startDate": START, "endDate": END})
    check(stats, a, AVAIL_CHECK, 200)
    stats.count_iteration()


def virtual_user(vu, stop, stats, sleep_s, booking_url, avail_url):
    with requests.Session() as session:
        while not stop.is_set():
            iteration(session, stats, booking_url, avail_url)
            if stop.wait(sleep_s):
                break
    logger.debug(f"VU {vu} done")


def run(vus=VUS, duration_s=DURATION_S, sleep_s=SLEEP_S, booking_url=BOOKING, avail_url=AVAIL):
    """Run `vus` virtual users until `duration_s` has elapsed.

    In-flight requests are bounded by the request timeout, so the run ends
    shortly after the deadline whatever the services answer.
    """
    stats = CheckStats()
    stop = threading.Event()
    timer = threading.Timer(duration_s, stop.set)
    timer.start()
    try:
        with ThreadPoolExecutor(max_workers=vus) as executor:
            futures = [executor.submit(virtual_user, i, stop, stats, sleep_s, booking_url, avail_url)
                       for i in range(vus)]
            for f in futures:
                f.result()
    finally:
        stop.set()
        timer.cancel()
    return stats


def print_summary(stats, elapsed_s, out=None):
    out = out or sys.stdout
    print("\n===== RESULTADO RESUMIDO =====", file=out)
    for name in stats.names():
        p, f = stats.passes.get(name, 0), stats.fails.get(name, 0)
        mark = "✓" if f == 0 else "✗"
        print(f"  {mark} {name}: {p} passed, {f} failed", file=out)
    print(f"  iterations: {stats.iterations}", file=out)
    print(f"  requests:   {stats.requests}", file=out)
    print(f"  duration:   {elapsed_s:.1f}s", file=out)


def positive_int(raw):
    value = int(raw)
    if value < 1:
        raise argparse.ArgumentTypeError(f"must be >= 1, got {value}")
    return value


def non_negative_float(raw):
    value = float(raw)
    if value < 0:
        raise argparse.ArgumentTypeError(f"must be >= 0, got {value:g}")
    return value


def parse_args(argv=None):
    p = argparse.ArgumentParser(description="Booking/availability smoke load test")
    p.add_argument("--vus", type=positive_int, default=VUS)
    p.add_argument("--duration", type=non_negative_float, default=DURATION_S, help="seconds")
    p.add_argument("--sleep", type=non_negative_float, default=SLEEP_S, help="pause between iterations, seconds")
    p.add_argument("--fail-on-check-failure", action="store_true",
                   help="exit with status 1 when any check failed")
    return p.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    logging.basicConfig(level=logging.INFO, format="%(levelname)s:%(asctime)s:%(name)s:%(message)s",
                        datefmt="%Y-%m-%dT%H:%M:%S")
    print(f"Executando smoke test: {args.vus} VUs por {args.duration:g}s contra {BOOKING} e {AVAIL}...")
    t0 = time.perf_counter()
    stats = run(args.vus, args.duration, args.sleep)
    print_summary(stats, time.perf_counter() - t0)
    if args.fail_on_check_failure and stats.failed:
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
