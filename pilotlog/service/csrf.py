"""Same-origin check for state-changing requests.

The request is accepted when its ``Origin`` (or, failing that, ``Referer``)
names the host the request was sent to, or the configured public app host.

This relies on the host header being trustworthy: the deployment must sit
behind an edge that terminates TLS and sets ``X-Forwarded-Host``/``Host``
itself. Without that edge a client can forge both sides of the comparison.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Optional
from urllib.parse import urlsplit

from pilotlog.logging import get_logger

logger = get_logger(__name__)

SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS", "TRACE"})

INVALID_ORIGIN = "Invalid request origin."
MISSING_ORIGIN = "Missing origin header."
MISSING_HOST = "Missing host header."

_DEFAULT_PORTS = (80, 443)


@dataclass(frozen=True)
class OriginCheck:
    ok: bool
    error: Optional[str] = None
    # Server-side only; never sent to the client
    reason: Optional[str] = None


def normalize_host(value: Optional[str]) -> Optional[str]:
    """Reduce a host header, origin or URL to ``hostname[:port]``.

    Only the first entry of a comma-separated proxy chain is considered.
    Default ports are dropped and the hostname is lower-cased. Returns
    ``None`` when nothing parseable remains.
    """
    if not value:
        return None
    first = value.split(",")[0].strip()
    if not first:
        return None
    candidate = first if "://" in first else f"http://{first}"
    try:
        parsed = urlsplit(candidate)
        hostname = parsed.hostname
        port = parsed.port
    except ValueError:
        return None
    if not hostname:
        return None
    hostname = hostname.lower()
    if ":" in hostname:
        hostname = f"[{hostname}]"
    if port is None or port in _DEFAULT_PORTS:
        return hostname
    return f"{hostname}:{port}"


def request_host(headers: Mapping[str, str]) -> Optional[str]:
    return headers.get("x-forwarded-host") or headers.get("host")


def check_origin(
    origin: Optional[str],
    host: Optional[str],
    referer: Optional[str],
    *,
    public_app_url: Optional[str] = None,
) -> OriginCheck:
    allowed = {
        h for h in (normalize_host(public_app_url), normalize_host(host)) if h
    }
    if not allowed:
        return OriginCheck(False, MISSING_HOST, "missing_host")

    source = origin if origin and origin.strip() and origin.strip() != "null" else referer
    if not source or not source.strip():
        return OriginCheck(False, MISSING_ORIGIN, "missing_origin")

    source = source.strip()
    try:
        parsed = urlsplit(source)
    except ValueError:
        return OriginCheck(False, INVALID_ORIGIN, "invalid_origin")
    if not parsed.scheme or not parsed.netloc:
        return OriginCheck(False, INVALID_ORIGIN, "invalid_origin")
    source_host = normalize_host(f"{parsed.scheme}://{parsed.netloc}")
    if source_host is None:
        return OriginCheck(False, INVALID_ORIGIN, "invalid_origin")

    if source_host not in allowed:
        return OriginCheck(False, INVALID_ORIGIN, "origin_mismatch")
    return OriginCheck(True)


def check_request_origin(
    method: str,
    headers: Mapping[str, str],
    *,
    public_app_url: Optional[str] = None,
    path: Optional[str] = None,
) -> OriginCheck:
    """Run :func:`check_origin` for unsafe methods; safe methods always pass."""
    if method.upper() in SAFE_METHODS:
        return OriginCheck(True)
    result = check_origin(
        headers.get("origin"),
        request_host(headers),
        headers.get("referer"),
        public_app_url=public_app_url,
    )
    if not result.ok:
        logger.warning(
            "csrf_rejected",
            reason=result.reason,
            method=method,
            path=path,
            origin=headers.get("origin"),
            referer_present=bool(headers.get("referer")),
        )
    return result


__all__ = [
    "INVALID_ORIGIN",
    "MISSING_HOST",
    "MISSING_ORIGIN",
    "OriginCheck",
    "SAFE_METHODS",
    "check_origin",
    "check_request_origin",
    "normalize_host",
    "request_host",
]
