"""Transport errors raised by chat model clients."""

from __future__ import annotations

import socket

import httpx


class ModelTransportError(RuntimeError):
    """Base class for failures talking to the model backend."""

    def __init__(self, message: str, url: str = "") -> None:
        super().__init__(message)
        self.url = url


class EndpointNotFoundError(ModelTransportError):
    """The backend answered 404 for the chat endpoint or model."""


class ConnectionRefusedModelError(ModelTransportError):
    """Nothing is listening at the backend address."""


class HostUnresolvableError(ModelTransportError):
    """The backend host name does not resolve."""


class ModelTimeoutError(ModelTransportError):
    """The backend did not answer within the request timeout."""


class BackendResponseError(ModelTransportError):
    """The backend answered with an error status or an unreadable body."""


_DNS_MARKERS = (
    "name or service not known",
    "nodename nor servname",
    "getaddrinfo failed",
    "temporary failure in name resolution",
    "no address associated",
    "enotfound",
)


def _is_dns_failure(exc: BaseException) -> bool:
    seen: set[int] = set()
    current: BaseException | None = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        if isinstance(current, socket.gaierror):
            return True
        if any(marker in str(current).lower() for marker in _DNS_MARKERS):
            return True
        current = current.__cause__ or current.__context__
    return False


def classify_http_error(exc: httpx.HTTPError, url: str, backend: str = "Model backend") -> ModelTransportError:
    """Map an httpx failure to a distinguishable transport error."""
    if isinstance(exc, httpx.TimeoutException):
        return ModelTimeoutError(f"Connection to {backend} at {url} timed out", url)
    if isinstance(exc, httpx.ConnectError):
        if _is_dns_failure(exc):
            return HostUnresolvableError(
                f"Cannot resolve host for {backend} at {url}. Check the URL", url
            )
        return ConnectionRefusedModelError(
            f"Cannot connect to {backend} at {url}. Make sure it is running", url
        )
    if isinstance(exc, httpx.HTTPStatusError):
        return status_error(exc.response.status_code, exc.response.text, url, backend)
    return BackendResponseError(f"{backend} request to {url} failed: {exc}", url)


def status_error(status_code: int, body: str, url: str, backend: str = "Model backend") -> ModelTransportError:
    if status_code == 404:
        return EndpointNotFoundError(
            f"{backend} API not found at {url}. Make sure it is running and the model is available",
            url,
        )
    return BackendResponseError(
        f"{backend} returned HTTP {status_code} from {url}: {body[:200]}", url
    )
