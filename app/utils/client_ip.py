from fastapi import Request

from app import config


def _should_trust_proxy_headers(request: Request) -> bool:
    if not config.TRUST_PROXY_HEADERS or not config.TRUSTED_PROXY_IPS:
        return False
    remote_host = request.client.host if request.client and request.client.host else ""
    return remote_host in config.TRUSTED_PROXY_IPS


def extract_client_ip(request: Request) -> str:
    """Client IP for audit logs. Proxy headers are honoured only from pinned proxies."""
    if _should_trust_proxy_headers(request):
        xff = request.headers.get("x-forwarded-for")
        if xff:
            return xff.split(",")[0].strip()

        xrip = request.headers.get("x-real-ip")
        if xrip:
            return xrip.strip()

    if request.client and request.client.host:
        return request.client.host

    return "unknown"
