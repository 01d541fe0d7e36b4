import logging
from functools import wraps
from hmac import compare_digest
from typing import Callable, Optional

from flask import current_app, make_response, request

from .config import Settings
from .errors import AuthError

security_logger = logging.getLogger("imagehost.security")


def _matches(provided: Optional[str], expected: str) -> bool:
    return compare_digest((provided or "").encode("utf-8"), expected.encode("utf-8"))


def check_credentials(settings: Settings, username: Optional[str], password: Optional[str]) -> bool:
    """Return True only when both fields equal the configured admin pair.

    Both comparisons always run so the timing does not reveal which one failed.
    """

    valid = True
    valid = _matches(username, settings.admin_user) and valid
    valid = _matches(password, settings.admin_pass) and valid
    return valid


def challenge_response(realm: str):
    response = make_response("Access denied", 401)
    response.headers["WWW-Authenticate"] = f'Basic realm="{realm}", charset="UTF-8"'
    response.mimetype = "text/plain"
    return response


def require_admin(view: Callable):
    """Gate a view behind HTTP Basic authentication with the admin pair."""

    @wraps(view)
    def wrapped(*args, **kwargs):
        settings: Settings = current_app.config["IMAGEHOST_SETTINGS"]
        credentials = request.authorization
        if (
            credentials is not None
            and (credentials.type or "").lower() == "basic"
            and check_credentials(settings, credentials.username, credentials.password)
        ):
            return view(*args, **kwargs)

        security_logger.warning(
            "admin_auth_failed endpoint=%s method=%s ip=%s reason=%s",
            request.endpoint,
            request.method,
            request.remote_addr or "unknown",
            "missing_credentials" if credentials is None else "invalid_credentials",
        )
        raise AuthError("Access denied")

    return wrapped
