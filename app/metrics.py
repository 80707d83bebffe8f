"""Prometheus metrics for the Bitrix24 integration."""

from __future__ import annotations

from prometheus_client import Counter, Histogram

REMOTE_CALLS = Counter(
    "bitrix24_remote_calls_total",
    "Total REST calls made to Bitrix24 portals",
    ["method", "outcome"],  # outcome: ok, remote_error, http_error, transport_error
)

REMOTE_CALL_TIME = Histogram(
    "bitrix24_remote_call_seconds",
    "Latency of REST calls made to Bitrix24 portals",
    ["method"],
)

SETUP_RUNS = Counter(
    "bitrix24_setup_runs_total",
    "Provisioning runs by overall status",
    ["status"],  # status: success, partial, failed
)

TOKEN_REFRESHES = Counter(
    "bitrix24_token_refresh_total",
    "OAuth token refresh attempts",
    ["outcome"],  # outcome: ok, failed, skipped
)


def observe_remote_call(method: str, outcome: str, duration: float) -> None:
    REMOTE_CALLS.labels(method=method, outcome=outcome).inc()
    REMOTE_CALL_TIME.labels(method=method).observe(duration)


def observe_setup(status: str) -> None:
    SETUP_RUNS.labels(status=status).inc()


def observe_token_refresh(outcome: str) -> None:
    TOKEN_REFRESHES.labels(outcome=outcome).inc()
