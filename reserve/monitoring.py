# reserve/monitoring.py
"""
Centralized monitoring: Prometheus metrics, structured JSON logging, optional Sentry.

Env vars:
- PROMETHEUS_ENABLED (default: true)
- SENTRY_DSN (optional)
- LOG_AS_JSON (default: true)
- LOG_LEVEL (default: INFO)
- ENVIRONMENT (default: development)
"""

import os
import logging
import time
from typing import Tuple

from prometheus_client import (
    Counter, Histogram, Gauge,
    generate_latest, CONTENT_TYPE_LATEST, REGISTRY,
)
from pythonjsonlogger import jsonlogger

# Sentry is an optional extra
try:
    import sentry_sdk
    _HAS_SENTRY = True
except ImportError:
    _HAS_SENTRY = False

# --- ENV flags
PROMETHEUS_ENABLED = os.getenv("PROMETHEUS_ENABLED", "true").lower() in ("1", "true", "yes")
SENTRY_DSN = os.getenv("SENTRY_DSN", None)
LOG_AS_JSON = os.getenv("LOG_AS_JSON", "true").lower() in ("1", "true", "yes")
ENVIRONMENT = os.getenv("ENVIRONMENT", "development")


# --- Logger setup
def setup_logger(name: str = "ai-reserve", level: int = None) -> logging.Logger:
    level = logging.getLevelName(os.getenv("LOG_LEVEL", "INFO")) if level is None else level
    logger = logging.getLogger(name)
    logger.setLevel(level)
    if not logger.handlers:
        handler = logging.StreamHandler()
        if LOG_AS_JSON:
            handler.setFormatter(jsonlogger.JsonFormatter(
                "%(asctime)s %(levelname)s %(name)s %(message)s"
            ))
        else:
            handler.setFormatter(logging.Formatter(
                "%(asctime)s %(levelname)s %(name)s %(message)s"
            ))
        logger.addHandler(handler)
    return logger


logger = setup_logger()

# --- Sentry (optional)
if SENTRY_DSN and _HAS_SENTRY:
    sentry_sdk.init(dsn=SENTRY_DSN, environment=ENVIRONMENT)
    logger.info("Sentry initialized")


# --- Prometheus metrics
REQUEST_COUNT = Counter(
    "reserve_http_requests_total",
    "Total API requests",
    ["method", "endpoint", "status"],
)

REQUEST_LATENCY = Histogram(
    "reserve_http_request_latency_seconds",
    "Request latency in seconds",
    ["endpoint"],
)

SUBMISSIONS = Counter(
    "reserve_submissions_total",
    "Compute request submissions",
    ["outcome"],
)

RESOLUTIONS = Counter(
    "reserve_resolutions_total",
    "Callback resolutions",
    ["outcome"],
)

UNAUTHORIZED_CALLBACKS = Counter(
    "reserve_unauthorized_callbacks_total",
    "Callbacks rejected because the caller was not the oracle endpoint",
)

ORACLE_CALLS = Counter(
    "reserve_oracle_calls_total",
    "Outbound oracle calls",
    ["operation", "outcome"],
)

ORACLE_LATENCY = Histogram(
    "reserve_oracle_latency_seconds",
    "Outbound oracle call latency",
    ["operation"],
)

PENDING_REQUESTS = Gauge(
    "reserve_pending_requests",
    "Requests registered with the oracle and still waiting for a callback",
)


# --- Helper wrappers (metrics must never break a request)
def observe_request(start_ts: float, endpoint: str, method: str, status: str):
    try:
        REQUEST_LATENCY.labels(endpoint=endpoint).observe(time.time() - start_ts)
        REQUEST_COUNT.labels(method=method, endpoint=endpoint, status=status).inc()
    except Exception:
        logger.debug("metrics update failed", exc_info=True)


def observe_oracle_call(start_ts: float, operation: str, outcome: str):
    try:
        ORACLE_LATENCY.labels(operation=operation).observe(time.time() - start_ts)
        ORACLE_CALLS.labels(operation=operation, outcome=outcome).inc()
    except Exception:
        logger.debug("metrics update failed", exc_info=True)


def inc_submission(outcome: str):
    try:
        SUBMISSIONS.labels(outcome=outcome).inc()
    except Exception:
        logger.debug("metrics update failed", exc_info=True)


def inc_resolution(outcome: str):
    try:
        RESOLUTIONS.labels(outcome=outcome).inc()
        if outcome == "unauthorized":
            UNAUTHORIZED_CALLBACKS.inc()
    except Exception:
        logger.debug("metrics update failed", exc_info=True)


def set_pending_requests(n: int):
    try:
        PENDING_REQUESTS.set(n)
    except Exception:
        logger.debug("metrics update failed", exc_info=True)


def prometheus_metrics_response() -> Tuple[bytes, str]:
    """Return (body_bytes, content_type) for Prometheus scrape."""
    return generate_latest(REGISTRY), CONTENT_TYPE_LATEST
