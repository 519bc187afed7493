from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status

from ...domain.auth_models import (
    ForgotPasswordRequest,
    LoginRequest,
    ResetPasswordRequest,
    SignupRequest,
    UserPublic,
    UserResponse,
)
from ...domain.chat_models import SessionIdentity
from ...domain.errors import AuthorizationError, ClientInputError
from ...infrastructure.credential_store import CredentialStore, get_credential_store
from ...infrastructure.session_store import SessionStore, get_session_store
from ...security.auth import (
    SessionConfig,
    encode_session_cookie,
    get_client_ip,
    get_current_session,
    get_optional_session,
)
from ...security.rate_limit import LOGIN_RULE, RESET_REQUEST_RULE, enforce
from ...services.auth_service import AuthService, UnknownUserError, UsernameTakenError

router = APIRouter(tags=["auth"])


def get_auth_service(
    store: CredentialStore = Depends(get_credential_store),
    sessions: SessionStore = Depends(get_session_store),
) -> AuthService:
    return AuthService(store, sessions)


@router.post("/signup", status_code=status.HTTP_201_CREATED, response_model=UserResponse)
async def signup(req: SignupRequest, auth: AuthService = Depends(get_auth_service)) -> UserResponse:
    try:
        user = await auth.signup(req.username, req.password, fullname=req.fullname, email=req.email)
    except UsernameTakenError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    except ClientInputError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    return UserResponse(user=user)


@router.post("/login", response_model=UserResponse)
async def login(
    req: LoginRequest,
    request: Request,
    response: Response,
    auth: AuthService = Depends(get_auth_service),
) -> UserResponse:
    ip = get_client_ip(request)
    enforce(LOGIN_RULE, f"{ip or 'unknown'}:{req.username}", "Too many login attempts. Please try again later.")
    try:
        user, session = await auth.login(req.username, req.password, ip_address=ip)
    except AuthorizationError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(exc))

    cfg = SessionConfig.from_env()
    response.set_cookie(
        cfg.cookie_name,
        encode_session_cookie(session.session_id, cfg),
        max_age=cfg.max_age_seconds,
        httponly=True,
        secure=cfg.secure,
        samesite="lax",
    )
    return UserResponse(user=user)


@router.post("/logout")
async def logout(
    response: Response,
    identity: SessionIdentity | None = Depends(get_optional_session),
    auth: AuthService = Depends(get_auth_service),
) -> dict:
    cfg = SessionConfig.from_env()
    if identity is not None:
        await auth.logout(identity.session_id)
    response.delete_cookie(cfg.cookie_name)
    return {"success": True}


@router.get("/me", response_model=UserResponse)
async def me(identity: SessionIdentity = Depends(get_current_session)) -> UserResponse:
    return UserResponse(user=UserPublic(id=identity.user_id, username=identity.username, fullname=identity.fullname))


@router.post("/forgot-password")
async def forgot_password(
    req: ForgotPasswordRequest,
    request: Request,
    auth: AuthService = Depends(get_auth_service),
) -> dict:
    enforce(
        RESET_REQUEST_RULE,
        f"{get_client_ip(request) or 'unknown'}:{req.username}",
        "Too many reset requests. Please try again later.",
    )
    try:
        issued = await auth.issue_reset_token(req.username)
    except UnknownUserError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    return {
        "success": True,
        "token": issued.token,
        "expires_at": issued.expires_at,
        "message": "Password reset token generated. You have 30 minutes to use it.",
    }


@router.post("/reset-password")
async def reset_password(req: ResetPasswordRequest, auth: AuthService = Depends(get_auth_service)) -> dict:
    try:
        await auth.reset_password(req.token, req.newPassword)
    except ClientInputError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    except AuthorizationError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(exc))
    return {"success": True, "message": "Password reset successful. Please log in with your new password."}
