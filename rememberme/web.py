"""FastAPI/Starlette integration.

``PersistentLoginMiddleware`` runs :meth:`Authenticator.authenticate` before
every request and exposes the :class:`RequestContext` on
``request.state.rememberme``; endpoints call ``register_login`` or ``logout``
on that context. Session and auth cookies are written to the response after
the endpoint returns.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, Callable, Mapping, Optional

from fastapi import FastAPI, HTTPException, Request, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware

from rememberme.logging import get_logger, set_correlation_id
from rememberme.service.authenticator import Authenticator, AuthResult
from rememberme.service.errors import RememberMeError
from rememberme.service.request import RequestContext
from rememberme.service.runtime import Runtime, get_runtime
from rememberme.storage.errors import StoreError, StoreTimeoutError

logger = get_logger(__name__)

__version__ = "0.1.0"

CredentialsVerifier = Callable[[str, str], Optional[Mapping[str, Any]]]


def context_from_request(request: Request) -> RequestContext:
    return RequestContext(
        request.cookies,
        remote_ip=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent", ""),
    )


def apply_response(
    ctx: RequestContext, response: Response, *, secure: bool = True
) -> Response:
    """Copy the context's pending cookie operations onto ``response``."""
    for op in ctx.response_cookies.values():
        if op.is_delete:
            response.delete_cookie(
                op.name, path="/", secure=secure, httponly=True, samesite="lax"
            )
        else:
            response.set_cookie(
                op.name,
                op.value,
                max_age=op.max_age,
                path="/",
                secure=secure,
                httponly=True,
                samesite="lax",
            )
    return response


class PersistentLoginMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, authenticator: Authenticator, *, secure: bool = True):
        super().__init__(app)
        self.authenticator = authenticator
        self.secure = secure

    async def dispatch(self, request: Request, call_next):
        ctx = context_from_request(request)
        try:
            await run_in_threadpool(self.authenticator.install, ctx)
            result = await run_in_threadpool(self.authenticator.authenticate, ctx)
        except (StoreError, RememberMeError) as exc:
            return error_response_for(request, exc)
        if result.compromised:
            logger.warning(
                "request_presented_stolen_login",
                path=request.url.path,
                username=result.username,
            )
        request.state.rememberme = ctx
        request.state.auth_result = result
        response = await call_next(request)
        try:
            await run_in_threadpool(self.authenticator.commit, ctx)
        except (StoreError, RememberMeError) as exc:
            return error_response_for(request, exc)
        return apply_response(ctx, response, secure=self.secure)


def get_context(request: Request) -> RequestContext:
    ctx = getattr(request.state, "rememberme", None)
    if ctx is None:
        raise HTTPException(status_code=500, detail="persistent login middleware not installed")
    return ctx


class LoginRequest(BaseModel):
    username: str = Field(min_length=1)
    password: str = ""
    remember: bool = True


class WhoAmI(BaseModel):
    authenticated: bool
    username: Optional[str] = None
    outcome: Optional[str] = None
    unexpected_token: bool = False


def _username_of(user: Any) -> Optional[str]:
    if isinstance(user, Mapping):
        return user.get("username")
    return getattr(user, "username", None)


def _error_response(status_code: int, code: str, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"status": "error", "error": {"code": code, "message": message}},
    )


def error_response_for(request: Request, exc: Exception) -> JSONResponse:
    """Map a store or protocol error to its logged JSON error envelope."""
    if isinstance(exc, StoreTimeoutError):
        logger.error("store_timeout", path=request.url.path, detail=exc.detail)
        return _error_response(503, "store_timeout", exc.message)
    if isinstance(exc, StoreError):
        logger.error(
            "store_error",
            path=request.url.path,
            error_type=type(exc).__name__,
            message=exc.message,
        )
        return _error_response(500, "store_error", exc.message)
    if isinstance(exc, RememberMeError):
        logger.error(
            "rememberme_error", path=request.url.path, reason=exc.reason, message=exc.message
        )
        return _error_response(500, exc.reason, exc.message)
    raise TypeError(f"no error envelope for {type(exc).__name__}")


def register_exception_handlers(app: FastAPI) -> None:
    for exc_class in (StoreError, RememberMeError):
        app.add_exception_handler(exc_class, _handle_error)


async def _handle_error(request: Request, exc: Exception) -> JSONResponse:
    return error_response_for(request, exc)


def create_app(
    runtime: Optional[Runtime] = None,
    *,
    verify_credentials: Optional[CredentialsVerifier] = None,
) -> FastAPI:
    """Build a FastAPI app wired to ``runtime``.

    ``verify_credentials(username, password)`` returns the user mapping to keep
    in the session, or ``None`` to reject the login. Without it the login
    route is not mounted.
    """
    runtime = runtime or get_runtime()
    authenticator = runtime.authenticator
    options = authenticator.options

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if runtime.settings.cleaner_enabled:
            await runtime.cleaner.start()
        yield
        await runtime.cleaner.stop()
        runtime.close()

    app = FastAPI(title="rememberme", version=__version__, lifespan=lifespan)
    app.state.runtime = runtime
    register_exception_handlers(app)
    app.add_middleware(
        PersistentLoginMiddleware,
        authenticator=authenticator,
        secure=runtime.settings.cookie_secure,
    )

    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    if verify_credentials is not None:

        @app.post("/auth/login")
        def login(body: LoginRequest, request: Request):
            ctx = get_context(request)
            user = verify_credentials(body.username, body.password)
            if user is None:
                logger.info("login_rejected", username=body.username)
                raise HTTPException(status_code=401, detail="invalid credentials")
            ctx.session.renew()
            ctx.session.put(options.current_user_key, dict(user))
            ctx.session.put(options.authenticated_key, True)
            if body.remember:
                authenticator.register_login(ctx)
            return {"username": _username_of(user), "remembered": body.remember}

    @app.post("/auth/logout")
    def logout(request: Request):
        ctx = get_context(request)
        authenticator.logout(ctx)
        if ctx.session is not None and not ctx.session.dropped:
            ctx.session.drop()
        return {"status": "ok"}

    @app.get("/auth/me", response_model=WhoAmI)
    def whoami(request: Request) -> WhoAmI:
        ctx = get_context(request)
        result: Optional[AuthResult] = getattr(request.state, "auth_result", None)
        authenticated = bool(ctx.assigns.get(options.authenticated_key))
        return WhoAmI(
            authenticated=authenticated,
            username=_username_of(ctx.assigns.get(options.current_user_key))
            if authenticated
            else None,
            outcome=result.outcome.value if result else None,
            unexpected_token=authenticator.unexpected_token(ctx),
        )

    return app


__all__ = [
    "PersistentLoginMiddleware",
    "apply_response",
    "context_from_request",
    "create_app",
    "error_response_for",
    "get_context",
]
