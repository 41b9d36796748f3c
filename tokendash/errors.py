from __future__ import annotations

from typing import Any


class PriceFeedError(Exception):
    """Base class for every failure raised by the price layer."""


class UpstreamError(PriceFeedError):
    def __init__(self, status: int, message: str = "") -> None:
        super().__init__(message or f"upstream returned HTTP {status}")
        self.status = status
        self.message = message


class UpstreamUnauthorized(UpstreamError):
    pass


class UpstreamRateLimited(UpstreamError):
    pass


class UpstreamUnavailable(UpstreamError):
    pass


class SourceUnreachable(PriceFeedError):
    pass


class MalformedResponse(PriceFeedError):
    pass


class NoPriceAvailable(PriceFeedError):
    pass


def _body_message(body: Any) -> str:
    if not isinstance(body, dict):
        return ""
    for k in ("message", "error_description", "error"):
        v = body.get(k)
        if isinstance(v, str) and v.strip():
            return v.strip()
    # {"status": {"error_code": 429, "error_message": "..."}}
    status = body.get("status")
    if isinstance(status, dict):
        v = status.get("error_message")
        if isinstance(v, str) and v.strip():
            return v.strip()
    return ""


def error_for_status(status: int, body: Any) -> UpstreamError:
    msg = _body_message(body)
    if status in (401, 403):
        return UpstreamUnauthorized(status, msg)
    if status == 429:
        return UpstreamRateLimited(status, msg)
    if status == 502:
        return UpstreamUnavailable(status, msg)
    return UpstreamError(status, msg)


def describe_error(exc: BaseException, prefix: str = "") -> str:
    if isinstance(exc, UpstreamUnauthorized):
        if exc.message:
            return exc.message
        return (
            f"{prefix or 'Request'} unauthorized (401/403). "
            "Add CG_API_KEY or CG_PRO_API_KEY to the environment and restart the gateway."
        )
    if isinstance(exc, UpstreamError):
        if exc.message:
            return f"{prefix}: {exc.message}" if prefix else exc.message
        return f"{prefix} failed ({exc.status})" if prefix else f"failed ({exc.status})"
    text = str(exc) or type(exc).__name__
    return f"{prefix}: {text}" if prefix else text
