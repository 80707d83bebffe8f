"""Error taxonomy for the Bitrix24 integration services."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class Bitrix24Error(Exception):
    code: str
    detail: str
    status_code: int = 400
    retryable: bool = False

    def __str__(self) -> str:
        return self.detail

    def to_dict(self) -> dict:
        return {"error": self.code, "detail": self.detail}


class IdentityNotFound(Bitrix24Error):
    def __init__(self, detail: str = "No workspace or portal could be resolved", code: str = "identity_not_found"):
        super().__init__(code=code, detail=detail, status_code=404, retryable=False)


class AmbiguousIdentity(Bitrix24Error):
    def __init__(self, detail: str, code: str = "ambiguous_identity"):
        super().__init__(code=code, detail=detail, status_code=409, retryable=False)


class TokenInvalid(Bitrix24Error):
    def __init__(self, detail: str = "Token is invalid, expired or already used", code: str = "token_invalid"):
        super().__init__(code=code, detail=detail, status_code=400, retryable=False)


class TokenExpired(Bitrix24Error):
    def __init__(self, detail: str = "Access token has expired", code: str = "token_expired"):
        super().__init__(code=code, detail=detail, status_code=401, retryable=False)


class TokenRefreshFailed(Bitrix24Error):
    def __init__(
        self,
        detail: str = "Token refresh failed, re-authorize the Bitrix24 application",
        code: str = "token_refresh_failed",
    ):
        super().__init__(code=code, detail=detail, status_code=401, retryable=False)


class RemoteApiError(Bitrix24Error):
    """Non-success answer (or no answer) from the portal REST API.

    ``remote_error`` holds the portal's ``error`` field when one was
    returned, e.g. ``insufficient_scope`` or ``BOT_NOT_FOUND``.
    """

    remote_error: str | None
    method: str | None

    def __init__(
        self,
        detail: str,
        remote_error: str | None = None,
        method: str | None = None,
        status_code: int = 502,
        retryable: bool = False,
    ):
        super().__init__(code="remote_api_error", detail=detail, status_code=status_code, retryable=retryable)
        object.__setattr__(self, "remote_error", remote_error)
        object.__setattr__(self, "method", method)

    @property
    def is_scope_error(self) -> bool:
        text = f"{self.remote_error or ''} {self.detail}".lower()
        return "scope" in text or "access_denied" in text

    @property
    def is_already_exists(self) -> bool:
        text = f"{self.remote_error or ''} {self.detail}".lower()
        return "already" in text

    def to_dict(self) -> dict:
        data = super().to_dict()
        if self.remote_error:
            data["remote_error"] = self.remote_error
        if self.method:
            data["method"] = self.method
        return data


class ConflictError(Bitrix24Error):
    def __init__(self, detail: str, code: str = "conflict"):
        super().__init__(code=code, detail=detail, status_code=409, retryable=False)


class ValidationError(Bitrix24Error):
    def __init__(self, detail: str, code: str = "validation_error"):
        super().__init__(code=code, detail=detail, status_code=400, retryable=False)


class NotFoundError(Bitrix24Error):
    def __init__(self, detail: str, code: str = "not_found"):
        super().__init__(code=code, detail=detail, status_code=404, retryable=False)

