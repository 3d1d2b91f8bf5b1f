"""
api/routes/v1/auth.py -- Session and user management REST endpoints.

Routes:
  GET  /api/v1/status     -- current user without secrets (401 if not signed in)
  POST /api/v1/login      -- password login; sets the token cookie
  POST /api/v1/logout     -- closes the session; clears the cookie
  POST /api/v1/chpasswd   -- change password (old password required)
  POST /api/v1/chbio      -- change full name / site URL
  POST /api/v1/register   -- self-registration followed by automatic login
  POST /api/v1/useradd    -- add a user (root, or anyone if self-registration is on)
  POST /api/v1/userdel    -- delete a user
  POST /api/v1/userlist   -- list users (root only by default)
  POST /api/v1/byway      -- passwordless sign-in (disabled unless BYWAY_ENABLED)

Every response body is {"errno": int, "data": ...}. errno 0 means success
and returns 200; failures return 403, except /status which returns 401.

Security:
  POST /login and /register are rate-limited per client IP.
  Cache-Control: no-store on every response that carries a token.
  The token cookie is httpOnly and samesite=lax; secure when SECURE_COOKIES=true.
"""

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter, login_rate_limit
from api.models import (
    BioChangeRequest,
    BywayRequest,
    LoginRequest,
    PasswordChangeRequest,
    RegisterRequest,
    ResultResponse,
    UserDeleteRequest,
    UserListRequest,
)
from auth.controller import AuthController
from auth.dependencies import get_controller, get_manager
from auth.errors import ErrorCode, Result
from auth.manage import UserManager

router = APIRouter()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _respond(result: Result, fail_status: int = 403) -> JSONResponse:
    status = 200 if result.errno == ErrorCode.OK else fail_status
    data = result.data
    if isinstance(data, ErrorCode):
        data = int(data)
    return JSONResponse(
        status_code=status,
        content=ResultResponse(errno=int(result.errno), data=data).model_dump(),
    )


def _set_token_cookie(request: Request, response: JSONResponse, ctrl: AuthController, token: str) -> None:
    """Write the session token as an httpOnly cookie that expires with the session."""
    resolver = ctrl.resolver
    response.set_cookie(
        resolver.get_token_name(),
        value=token,
        httponly=True,
        samesite="lax",
        secure=request.app.state.settings.secure_cookies,
        max_age=resolver.get_expiration(),
        path="/",
    )
    response.headers["Cache-Control"] = "no-store"


# ---------------------------------------------------------------------------
# Session endpoints
# ---------------------------------------------------------------------------


@router.get("/status", response_model=ResultResponse)
def status(ctrl: AuthController = Depends(get_controller)) -> JSONResponse:
    """Return the signed-in user's profile, or 401."""
    return _respond(ctrl.resolver.get_safe_user_data(), fail_status=401)


@router.post("/login", response_model=ResultResponse)
@limiter.limit(login_rate_limit)
def login(request: Request, body: LoginRequest, ctrl: AuthController = Depends(get_controller)) -> JSONResponse:
    """Authenticate with uname/upass and set the token cookie."""
    result = ctrl.login(body.model_dump())
    resp = _respond(result)
    if result.ok:
        _set_token_cookie(request, resp, ctrl, result.data["token"])
    return resp


@router.post("/logout", response_model=ResultResponse)
def logout(ctrl: AuthController = Depends(get_controller)) -> JSONResponse:
    """Close the current session and expire the cookie."""
    result = ctrl.logout()
    resp = _respond(result)
    if result.ok:
        resp.delete_cookie(ctrl.resolver.get_token_name(), path="/")
    return resp


@router.post("/chpasswd", response_model=ResultResponse)
def change_password(body: PasswordChangeRequest, ctrl: AuthController = Depends(get_controller)) -> JSONResponse:
    return _respond(ctrl.change_password(body.model_dump(), require_old_password=True))


@router.post("/chbio", response_model=ResultResponse)
def change_bio(body: BioChangeRequest, ctrl: AuthController = Depends(get_controller)) -> JSONResponse:
    return _respond(ctrl.change_bio(body.model_dump()))


# ---------------------------------------------------------------------------
# User management endpoints
# ---------------------------------------------------------------------------


@router.post("/register", response_model=ResultResponse)
@limiter.limit(login_rate_limit)
def register(
    request: Request,
    body: RegisterRequest,
    ctrl: AuthController = Depends(get_controller),
    manage: UserManager = Depends(get_manager),
) -> JSONResponse:
    """Self-register, then sign the new user in.

    The password must be typed twice. Email is required when REQUIRE_EMAIL
    is set.
    """
    settings = request.app.state.settings
    if not settings.self_registration_enabled:
        return _respond(Result(ErrorCode.SELF_REGISTER_NOT_ALLOWED))

    args = body.model_dump()
    result = manage.self_add(args, require_password_twice=True, require_email=settings.require_email)
    if not result.ok:
        return _respond(result)

    result = ctrl.login({"uname": args["addname"], "upass": args["addpass1"]})
    resp = _respond(result)
    if result.ok:
        _set_token_cookie(request, resp, ctrl, result.data["token"])
    return resp


@router.post("/useradd", response_model=ResultResponse)
def add_user(request: Request, body: RegisterRequest, manage: UserManager = Depends(get_manager)) -> JSONResponse:
    settings = request.app.state.settings
    return _respond(
        manage.add(
            body.model_dump(),
            require_password_twice=False,
            allow_self_register=settings.self_registration_enabled,
            require_email=settings.require_email,
        )
    )


@router.post("/userdel", response_model=ResultResponse)
def delete_user(body: UserDeleteRequest, manage: UserManager = Depends(get_manager)) -> JSONResponse:
    return _respond(manage.delete(body.model_dump()))


@router.post("/userlist", response_model=ResultResponse)
def list_users(body: UserListRequest, manage: UserManager = Depends(get_manager)) -> JSONResponse:
    return _respond(manage.list(body.model_dump()))


@router.post("/byway", response_model=ResultResponse)
def byway(
    request: Request,
    body: BywayRequest,
    ctrl: AuthController = Depends(get_controller),
    manage: UserManager = Depends(get_manager),
) -> JSONResponse:
    """Passwordless sign-in for an identity vouched for by another service.

    This endpoint trusts uservice as sent by the client, which is only safe
    when a fronting proxy or OAuth callback fills it in. It is therefore off
    by default and returns 404 unless BYWAY_ENABLED=true.
    """
    if not request.app.state.settings.byway_enabled:
        raise HTTPException(status_code=404, detail={"code": "not_found", "message": "Not found."})

    result = manage.self_add_passwordless(body.model_dump())
    resp = _respond(result)
    if result.ok:
        _set_token_cookie(request, resp, ctrl, result.data["token"])
    return resp
