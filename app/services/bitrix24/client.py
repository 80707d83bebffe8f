"""Bitrix24 REST API client.

Every REST method is a ``POST {endpoint}{method}`` with a JSON body. OAuth
installs pass the access token as ``auth`` in the body; inbound-webhook
installs carry the credential inside the endpoint URL itself.

Read methods (list/get/status/info) are retried with exponential backoff on
transport errors, 429 and 5xx. Mutating methods are sent exactly once.
"""

from __future__ import annotations

import time
from typing import Any

import httpx

from app.config import settings
from app.logging import get_logger
from app.metrics import observe_remote_call
from app.services.bitrix24.errors import RemoteApiError
from app.telemetry import get_tracer

logger = get_logger(__name__)
tracer = get_tracer(__name__)

_READ_METHOD_SUFFIXES = (".list", ".get", ".status", ".info")
_READ_METHODS = {"app.info", "profile", "scope", "methods"}


def is_read_method(method: str) -> bool:
    name = method.lower()
    return name in _READ_METHODS or name.endswith(_READ_METHOD_SUFFIXES)


def build_http_client(timeout: float | None = None) -> httpx.Client:
    return httpx.Client(timeout=timeout if timeout is not None else settings.bitrix24_http_timeout)


def _retry_after(response: httpx.Response, default: float) -> float:
    value = response.headers.get("Retry-After")
    if not value:
        return default
    try:
        return max(0.0, float(value))
    except ValueError:
        return default


def _parse_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return None


def parse_result(method: str, response: httpx.Response) -> Any:
    """Return ``result`` from a REST answer or raise ``RemoteApiError``."""
    body = _parse_body(response)
    if isinstance(body, dict) and body.get("error"):
        remote_error = str(body.get("error"))
        description = body.get("error_description") or remote_error
        raise RemoteApiError(
            f"{method} failed: {description}",
            remote_error=remote_error,
            method=method,
            retryable=response.status_code >= 500,
        )
    if response.status_code >= 400:
        snippet = (response.text or "")[:200]
        raise RemoteApiError(
            f"{method} failed with HTTP {response.status_code}: {snippet}",
            method=method,
            retryable=response.status_code >= 500 or response.status_code == 429,
        )
    if not isinstance(body, dict):
        raise RemoteApiError(f"{method} returned a non-JSON response", method=method)
    return body.get("result")


class Bitrix24Client:
    def __init__(
        self,
        endpoint: str,
        access_token: str | None = None,
        *,
        timeout: float | None = None,
        max_retries: int | None = None,
        backoff_seconds: float | None = None,
    ) -> None:
        self.endpoint = endpoint.rstrip("/") + "/"
        self.access_token = access_token
        self.timeout = timeout if timeout is not None else settings.bitrix24_http_timeout
        self.max_retries = settings.bitrix24_read_retries if max_retries is None else max_retries
        self.backoff_seconds = (
            settings.bitrix24_retry_backoff_seconds if backoff_seconds is None else backoff_seconds
        )

    def _attempts_for(self, method: str) -> int:
        if is_read_method(method):
            return 1 + max(0, self.max_retries)
        return 1

    def call(self, method: str, params: dict | None = None) -> Any:
        url = f"{self.endpoint}{method}"
        payload = dict(params or {})
        if self.access_token:
            payload["auth"] = self.access_token

        attempts = self._attempts_for(method)
        for attempt in range(attempts):
            delay = self.backoff_seconds * (2**attempt)
            started = time.monotonic()
            with tracer.start_as_current_span(f"bitrix24 {method}") as span:
                span.set_attribute("bitrix24.method", method)
                span.set_attribute("bitrix24.attempt", attempt + 1)
                try:
                    with build_http_client(self.timeout) as client:
                        response = client.post(url, json=payload)
                except httpx.RequestError as exc:
                    observe_remote_call(method, "transport_error", time.monotonic() - started)
                    logger.warning(
                        "bitrix24_request_error method=%s attempt=%s error=%s", method, attempt + 1, exc
                    )
                    if attempt + 1 < attempts:
                        time.sleep(delay)
                        continue
                    raise RemoteApiError(
                        f"{method} failed: could not reach portal ({exc})",
                        method=method,
                        retryable=True,
                    ) from exc
                span.set_attribute("http.status_code", response.status_code)

            duration = time.monotonic() - started
            if response.status_code == 429 or response.status_code >= 500:
                observe_remote_call(method, "http_error", duration)
                logger.warning(
                    "bitrix24_http_error method=%s status=%s attempt=%s",
                    method,
                    response.status_code,
                    attempt + 1,
                )
                if attempt + 1 < attempts:
                    time.sleep(_retry_after(response, delay))
                    continue
                return parse_result(method, response)

            try:
                result = parse_result(method, response)
            except RemoteApiError as exc:
                observe_remote_call(method, "remote_error", duration)
                logger.info("bitrix24_remote_error method=%s error=%s", method, exc.remote_error or exc.detail)
                raise
            observe_remote_call(method, "ok", duration)
            return result
        raise RemoteApiError(f"{method} failed", method=method)
