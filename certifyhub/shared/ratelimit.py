from __future__ import annotations

from typing import Mapping

from flask import request


def client_ip(headers: Mapping[str, str], remote_addr: str | None = None) -> str:
    """Best guess at the caller's address behind Cloudflare or a reverse proxy."""
    cf_ip = headers.get("cf-connecting-ip")
    if cf_ip:
        return cf_ip.strip()
    real_ip = headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return remote_addr or "unknown"


def rate_limit_key() -> str:
    """Flask-Limiter key: one counter per client address and request path."""
    return f"{client_ip(request.headers, request.remote_addr)}:{request.path}"
