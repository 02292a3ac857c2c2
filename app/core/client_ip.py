"""
Client IP extraction for audit records and admin events.

Order: first `X-Forwarded-For` hop, then `X-Real-IP`, then the peer
address.  IPv4-mapped IPv6 addresses (`::ffff:1.2.3.4`) are reported as
plain IPv4.  Works for both `Request` and `WebSocket` (both are
`starlette.requests.HTTPConnection`).
"""

from starlette.requests import HTTPConnection

_MAPPED_PREFIX = "::ffff:"


def clean_ip(raw: str | None) -> str:
    ip = (raw or "").strip()
    if ip.startswith(_MAPPED_PREFIX):
        ip = ip[len(_MAPPED_PREFIX):]
    return ip


def get_client_ip(conn: HTTPConnection) -> str:
    forwarded = conn.headers.get("x-forwarded-for")
    if forwarded:
        ip = clean_ip(forwarded.split(",")[0])
        if ip:
            return ip

    real = conn.headers.get("x-real-ip")
    if real:
        ip = clean_ip(real)
        if ip:
            return ip

    return clean_ip(conn.client.host if conn.client else "")
