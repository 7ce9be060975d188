"""
Custom exceptions for the KeyVal client.

Commit conflicts are not exceptions: they surface as ``CommitError`` /
``TransactionError`` results. Everything here is an operational failure.
"""

from __future__ import annotations

from typing import Any


class KvError(Exception):
    """Base error for the KeyVal client."""

    pass


class TransportError(KvError):
    """Network failure, timeout or server-side (5xx) error. Retryable."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class ProtocolError(KvError):
    """Malformed response body, stream frame or unexpected payload shape."""

    pass


class RequestError(KvError):
    """Request rejected by the remote store (4xx)."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class ValidationError(KvError, ValueError):
    """Invalid argument, detected before any I/O."""

    pass


class InvalidKeyError(ValidationError):
    """Key part of an unsupported type or out of range."""

    pass


class KvStateError(KvError):
    """Builder or transaction used after it was committed."""

    pass


def map_http_error(e: Any) -> KvError:
    """Translate an httpx exception or error response into the KvError hierarchy."""
    import httpx

    if isinstance(e, KvError):
        return e
    if isinstance(e, httpx.Response):
        detail = _error_detail(e)
        if e.status_code >= 500:
            return TransportError(f"HTTP {e.status_code}: {detail}", status_code=e.status_code)
        return RequestError(f"HTTP {e.status_code}: {detail}", status_code=e.status_code)
    if isinstance(e, httpx.HTTPStatusError):
        return map_http_error(e.response)
    if isinstance(e, (httpx.TimeoutException, httpx.NetworkError, httpx.RemoteProtocolError)):
        return TransportError(f"{type(e).__name__}: {e}")
    if isinstance(e, httpx.HTTPError):
        return TransportError(str(e))
    if isinstance(e, ValueError):
        return ProtocolError(str(e))
    return KvError(str(e))


def _error_detail(response: Any) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(body, dict) and "error" in body:
        return str(body["error"])
    return str(body)[:200]
