import hmac
import secrets

from fastapi import Request

from config import CSRF_COOKIE_NAME

UNSAFE_METHODS = {"POST", "PUT", "PATCH", "DELETE"}


def _origin_host(request: Request) -> str:
    header = request.headers.get("origin") or request.headers.get("referer") or ""
    if "://" not in header:
        return ""
    return header.split("://", 1)[1].split("/", 1)[0].lower()


def _api_write_allowed(request: Request) -> bool:
    """Same-origin request carrying the CSRF cookie value in ``x-csrf-token``."""
    host = _origin_host(request)
    if not host or host != request.url.netloc.lower():
        return False
    cookie_token = request.cookies.get(CSRF_COOKIE_NAME, "")
    header_token = request.headers.get("x-csrf-token", "")
    return bool(cookie_token) and hmac.compare_digest(cookie_token, header_token)


def _with_csrf_cookie(request: Request, response):
    if not request.cookies.get(CSRF_COOKIE_NAME):
        response.set_cookie(
            CSRF_COOKIE_NAME,
            secrets.token_urlsafe(32),
            httponly=False,
            samesite="lax",
            secure=request.url.scheme == "https",
        )
    return response
