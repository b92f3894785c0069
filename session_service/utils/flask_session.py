"""
Flask integration for the stateless session manager.

Runs ``SessionManager.validate`` before every request, exposes the result on
``flask.g.session_view`` and writes the rotated (or cleared) session cookies
onto the response afterwards.

    app = Flask(__name__)
    sessions = StatelessSession(app)

    @app.get("/api/me")
    @session_required
    def me():
        return jsonify(g.session_view.model_dump(by_alias=True, mode="json"))
"""

from collections.abc import Callable
from functools import wraps
from typing import Any, Optional

from flask import Flask, Response, current_app, g, jsonify, request

from session_service.config import logger
from session_service.session_manager import SessionManager
from session_service.utils.cookie_chunks import Cookie

EXTENSION_NAME = "stateless_session"
_PENDING_COOKIES_KEY = "_session_cookies"


class StatelessSession:
    """
    Flask extension that keeps the session cookie family in sync on every request.

    Attributes:
        manager: Session manager used for validation, sign-in and sign-out.
    """

    def __init__(self, app: Optional[Flask] = None, manager: Optional[SessionManager] = None) -> None:
        self.manager = manager
        if app is not None:
            self.init_app(app)

    def init_app(self, app: Flask) -> None:
        """
        Register request hooks on the application.

        Args:
            app: Flask application instance.

        Returns:
            None.
        """
        if self.manager is None:
            self.manager = SessionManager.from_env()
        app.extensions[EXTENSION_NAME] = self
        app.before_request(self._load_session)
        app.after_request(self._save_session)

    def _load_session(self) -> None:
        result = self.manager.validate(request.cookies.to_dict())
        g.session_view = result.view
        g.session_outcome = result.outcome
        setattr(g, _PENDING_COOKIES_KEY, result.cookies)

    def _save_session(self, response: Response) -> Response:
        for cookie in getattr(g, _PENDING_COOKIES_KEY, []):
            self._set_cookie(response, cookie)
        return response

    @staticmethod
    def _set_cookie(response: Response, cookie: Cookie) -> None:
        """
        Write one cookie using the attributes carried on it.

        Clears keep the original path/domain so the browser matches and drops them.

        Args:
            response: Response to mutate.
            cookie: Cookie to write.

        Returns:
            None.
        """
        options = cookie.options
        response.set_cookie(
            key=cookie.name,
            value=cookie.value,
            max_age=options.max_age,
            expires=0 if cookie.is_clear else options.expires,
            path=options.path,
            domain=options.domain,
            secure=options.secure,
            httponly=options.http_only,
            samesite=options.same_site,
        )

    def sign_in(self, subject: Optional[str], refresh_token: Optional[str]) -> None:
        """
        Start a new session for the current request's response.

        Args:
            subject: Stable user identifier from the identity provider.
            refresh_token: Provider refresh token from the code exchange.

        Returns:
            None.
        """
        result = self.manager.start(subject, refresh_token, request.cookies.to_dict())
        g.session_view = result.view
        g.session_outcome = result.outcome
        setattr(g, _PENDING_COOKIES_KEY, result.cookies)

    def sign_out(self) -> None:
        """Clear every session cookie on the current request's response."""
        g.session_view = None
        g.session_outcome = None
        setattr(g, _PENDING_COOKIES_KEY, self.manager.end(request.cookies.to_dict()))


def get_extension() -> StatelessSession:
    """Return the extension registered on the current app."""
    return current_app.extensions[EXTENSION_NAME]


def session_required(f: Callable[..., Any]) -> Callable[..., Any]:
    """Reject the request with 401 unless the current session is valid.

    Args:
        f: Route handler to wrap.

    Returns:
        Wrapped route handler with session validation.
    """

    @wraps(f)
    def decorated_function(*args: Any, **kwargs: Any) -> Any:
        view = getattr(g, "session_view", None)
        if not get_extension().manager.is_valid(view):
            detail = view.error.message if view is not None and view.error is not None else None
            logger.info("Rejecting request without a valid session", route=request.path, detail=detail)
            return jsonify({"error": "Session invalid", "detail": detail}), 401

        return f(*args, **kwargs)

    return decorated_function
