"""Shared HTTP security helpers."""

from __future__ import annotations

import hmac
from ipaddress import ip_address, ip_network
from typing import Optional, Sequence

from fastapi import HTTPException, Request, status


class BodyTooLarge(ValueError):
    """Raised when a request body exceeds the configured cap."""

    def __init__(self, limit: int) -> None:
        super().__init__(f"request body exceeds {limit} bytes")
        self.limit = limit


async def read_capped_body(request: Request, limit: int) -> bytes:
    """Read the raw request body, refusing to buffer more than ``limit`` bytes."""

    declared = request.headers.get("content-length")
    if declared is not None:
        try:
            declared_length = int(declared)
        except ValueError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="invalid request") from exc
        if declared_length > limit:
            raise BodyTooLarge(limit)

    body = bytearray()
    async for chunk in request.stream():
        body.extend(chunk)
        if len(body) > limit:
            raise BodyTooLarge(limit)
    return bytes(body)


def get_client_ip(request: Request, trusted_proxies: Sequence[str] = ()) -> str:
    """Resolve the caller address used in audit logs.

    ``X-Forwarded-For`` is honoured as-is when no trusted proxies are
    configured (the service normally sits behind a single reverse proxy);
    otherwise only when the connection comes from one of ``trusted_proxies``.
    """

    source_ip = request.client.host if request.client else None
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded and _is_trusted(source_ip, trusted_proxies):
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return source_ip or "unknown"


def _is_trusted(source_ip: Optional[str], trusted_proxies: Sequence[str]) -> bool:
    if not trusted_proxies:
        return True
    if not source_ip:
        return False
    try:
        source = ip_address(source_ip)
    except ValueError:
        return False
    for cidr in trusted_proxies:
        try:
            if source in ip_network(cidr, strict=False):
                return True
        except ValueError:
            continue
    return False


def require_metrics_access(request: Request, token: Optional[str]) -> None:
    """Enforce metrics endpoint authentication via token or localhost constraint."""
    if token:
        expected = f"Bearer {token}"
        auth_header = request.headers.get("authorization")
        if not auth_header or not hmac.compare_digest(auth_header, expected):
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid metrics token")
        return

    client = request.client
    client_host = client.host if client else None
    if not client_host:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Metrics access denied")

    try:
        loopback = ip_address(client_host).is_loopback
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Metrics access denied") from exc
    if not loopback:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Metrics access restricted to localhost",
        )
