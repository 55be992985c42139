from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, Response
from fastapi.responses import JSONResponse

from applicant_auth.api.schemas import (
    AccountResponse,
    AuthResponse,
    EmailChangeRequest,
    EmailRequest,
    Envelope,
    GoogleLoginRequest,
    LoginRequest,
    OtpVerifyRequest,
    PasswordChangeRequest,
    PasswordResetConfirm,
    ProofResponse,
    RegisterRequest,
    SessionResponse,
    SetPasswordRequest,
    SsoEmailChangeRequest,
    SsoNewEmailRequest,
    SsoOwnershipRequest,
    TokenRefreshRequest,
    TokenVerification,
)
from applicant_auth.logging import get_logger
from applicant_auth.service.auth import ALREADY_ACTIVATED, LoginResult
from applicant_auth.service.errors import ServiceError
from applicant_auth.service.runtime import get_runtime
from applicant_auth.service.tokens import REFRESH, IssuedToken, TokenClaims
from applicant_auth.storage.models import Account

logger = get_logger(__name__)

router = APIRouter(prefix="/api")

ACCESS_COOKIE = "access_token"
REFRESH_COOKIE = "refresh_token"

_GENERIC_RESET_MESSAGE = (
    "if an account exists for this email, a password reset link has been sent"
)
_GENERIC_OTP_MESSAGE = "if the address can receive mail, a verification code has been sent"


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def _extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, value = header.partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()


def _extract_basic(header: Optional[str]) -> Optional[tuple[str, str]]:
    if not header:
        return None
    scheme, _, value = header.partition(" ")
    if scheme.lower() != "basic" or not value.strip():
        return None
    try:
        decoded = base64.b64decode(value.strip(), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return None
    email, sep, password = decoded.partition(":")
    if not sep:
        return None
    return email, password


def _expires_at(token: IssuedToken) -> datetime:
    return datetime.fromtimestamp(token.expires_at, tz=timezone.utc)


def _set_cookie(response: Response, name: str, value: str, max_age: int) -> None:
    settings = get_runtime().settings
    response.set_cookie(
        name,
        value,
        httponly=True,
        secure=settings.cookie_secure,
        samesite=settings.cookie_samesite,
        max_age=max_age,
        path="/",
    )


def _apply_session_cookies(
    response: Response, access: IssuedToken, refresh: Optional[IssuedToken] = None
) -> None:
    _set_cookie(response, ACCESS_COOKIE, access.token, access.ttl_seconds)
    if refresh is not None:
        _set_cookie(response, REFRESH_COOKIE, refresh.token, refresh.ttl_seconds)


def _clear_session_cookies(response: Response) -> None:
    settings = get_runtime().settings
    for name in (ACCESS_COOKIE, REFRESH_COOKIE):
        response.delete_cookie(
            name,
            path="/",
            secure=settings.cookie_secure,
            httponly=True,
            samesite=settings.cookie_samesite,
        )


def _account_body(account: Account) -> AccountResponse:
    return AccountResponse.model_validate(account)


def _auth_body(result: LoginResult) -> AuthResponse:
    return AuthResponse(
        account=_account_body(result.account),
        access_token=result.access.token,
        expires_at=_expires_at(result.access),
    )


@dataclass
class Principal:
    account: Account
    claims: TokenClaims
    access_token: str


async def get_principal(
    request: Request, authorization: Optional[str] = Header(None)
) -> Principal:
    token = _extract_bearer(authorization) or request.cookies.get(ACCESS_COOKIE)
    runtime = get_runtime()
    account, claims = await runtime.auth.authenticate(token)
    return Principal(account=account, claims=claims, access_token=token)


# -- registration & activation ---------------------------------------------


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest):
    """Create a disabled, unactivated account and mail its activation link.

    Raises:
        409: If the email is already registered
        500: If the activation email could not be sent (nothing is persisted)
    """
    runtime = get_runtime()
    account = await runtime.auth.register(body.email, body.password, body.profile())
    return Envelope(
        status="ok",
        data={
            "account": _account_body(account),
            "message": "registration successful; check your email to activate your account",
        },
    )


@router.get("/auth/activate", response_model=Envelope, tags=["auth"])
async def activate(token: str = Query(..., min_length=1, max_length=512)):
    runtime = get_runtime()
    result = await runtime.auth.activate(token)
    message = (
        "account is already activated"
        if result.already_activated
        else "account activated; you can now sign in"
    )
    return Envelope(
        status="ok",
        data={
            "activated": True,
            "already_activated": result.already_activated,
            "message": message,
        },
    )


@router.post("/auth/resend-activation", response_model=Envelope, tags=["auth"])
async def resend_activation(body: EmailRequest):
    runtime = get_runtime()
    outcome = await runtime.auth.resend_activation(body.email)
    if outcome == ALREADY_ACTIVATED:
        message = "account is already activated; please sign in"
    else:
        message = "if the account is awaiting activation, a new activation email has been sent"
    return Envelope(status="ok", data={"status": outcome, "message": message})


# -- login & sessions -------------------------------------------------------


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(
    response: Response,
    body: Optional[LoginRequest] = None,
    authorization: Optional[str] = Header(None),
):
    """Authenticate with email and password (JSON body or HTTP Basic).

    Raises:
        401: If credentials are invalid
        403: If the account is not activated, disabled, or uses Google sign-in
        429: If too many attempts were made for this email
    """
    if body is not None:
        email, password = body.email, body.password
    else:
        basic = _extract_basic(authorization)
        if basic is None:
            raise _http_error("validation_error", "credentials are required", status_code=400)
        email, password = basic
    runtime = get_runtime()
    result = await runtime.auth.login(email, password)
    _apply_session_cookies(response, result.access, result.refresh)
    return Envelope(status="ok", data=_auth_body(result))


@router.post("/auth/oauth2/login", response_model=Envelope, tags=["auth"])
async def google_login(body: GoogleLoginRequest, response: Response):
    runtime = get_runtime()
    result = await runtime.sso.sso_login(body.id_token)
    _apply_session_cookies(response, result.access, result.refresh)
    return Envelope(status="ok", data=_auth_body(result))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(
    request: Request,
    response: Response,
    body: Optional[TokenRefreshRequest] = None,
):
    presented = (body.refresh_token if body else None) or request.cookies.get(REFRESH_COOKIE)
    runtime = get_runtime()
    access, refresh_token, account = await runtime.auth.refresh(presented)
    _set_cookie(response, ACCESS_COOKIE, access.token, access.ttl_seconds)
    # The refresh token is not rotated, so its cookie must not outlive it
    refresh_claims = runtime.tokens.verify_signature_and_expiry(
        refresh_token, expected_type=REFRESH
    )
    _set_cookie(
        response,
        REFRESH_COOKIE,
        refresh_token,
        runtime.tokens.remaining_lifetime(refresh_claims),
    )
    return Envelope(
        status="ok",
        data=AuthResponse(
            account=_account_body(account),
            access_token=access.token,
            expires_at=_expires_at(access),
        ),
    )


@router.get("/auth/check-session", response_model=Envelope, tags=["auth"])
async def check_session(
    request: Request, response: Response, authorization: Optional[str] = Header(None)
):
    token = _extract_bearer(authorization) or request.cookies.get(ACCESS_COOKIE)
    runtime = get_runtime()
    account, access = await runtime.auth.check_session(token)
    _set_cookie(response, ACCESS_COOKIE, access.token, access.ttl_seconds)
    return Envelope(
        status="ok",
        data=SessionResponse(
            account=_account_body(account),
            access_token=access.token,
            expires_at=_expires_at(access),
        ),
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    request: Request,
    response: Response,
    body: Optional[TokenRefreshRequest] = None,
    authorization: Optional[str] = Header(None),
):
    access_token = _extract_bearer(authorization) or request.cookies.get(ACCESS_COOKIE)
    refresh_token = (body.refresh_token if body else None) or request.cookies.get(
        REFRESH_COOKIE
    )
    runtime = get_runtime()
    await runtime.auth.logout(access_token, refresh_token)
    _clear_session_cookies(response)
    return Envelope(status="ok", data={"message": "logged out"})


# -- password reset ---------------------------------------------------------


@router.post("/auth/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(body: EmailRequest):
    runtime = get_runtime()
    await runtime.auth.forgot_password(body.email)
    return Envelope(status="ok", data={"message": _GENERIC_RESET_MESSAGE})


@router.post("/auth/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(body: PasswordResetConfirm):
    runtime = get_runtime()
    await runtime.auth.reset_password(body.token, body.new_password)
    return Envelope(status="ok", data={"message": "password has been reset; please sign in"})


# -- authenticated account changes ------------------------------------------


@router.post("/auth/change-password", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest,
    response: Response,
    principal: Principal = Depends(get_principal),
):
    runtime = get_runtime()
    access = await runtime.auth.change_password(
        principal.account,
        body.current_password,
        body.new_password,
        access_token=principal.access_token,
    )
    _set_cookie(response, ACCESS_COOKIE, access.token, access.ttl_seconds)
    return Envelope(
        status="ok",
        data={
            "message": "password changed",
            "access_token": access.token,
            "expires_at": _expires_at(access),
        },
    )


@router.post("/auth/set-password", response_model=Envelope, tags=["auth"])
async def set_password(
    body: SetPasswordRequest, principal: Principal = Depends(get_principal)
):
    """Give a Google sign-in account a password; it becomes a local account."""
    runtime = get_runtime()
    account = await runtime.sso.set_password_for_sso_user(
        principal.account.id, body.new_password, body.confirm_password
    )
    return Envelope(
        status="ok",
        data={"account": _account_body(account), "message": "password set"},
    )


@router.post("/auth/change-email", response_model=Envelope, tags=["auth"])
async def change_email(
    body: EmailChangeRequest, principal: Principal = Depends(get_principal)
):
    runtime = get_runtime()
    account = await runtime.auth.change_email(
        principal.account, body.current_password, body.new_email
    )
    return Envelope(
        status="ok",
        data={"account": _account_body(account), "message": "email changed"},
    )


@router.post("/auth/verify-sso-ownership", response_model=Envelope, tags=["auth"])
async def verify_sso_ownership(
    body: SsoOwnershipRequest, principal: Principal = Depends(get_principal)
):
    runtime = get_runtime()
    proof = await runtime.sso.verify_sso_ownership(principal.account, body.id_token)
    return Envelope(
        status="ok",
        data=ProofResponse(proof=proof, expires_in=runtime.settings.sso_proof_ttl_minutes * 60),
    )


@router.post("/auth/verify-new-email-ownership", response_model=Envelope, tags=["auth"])
async def verify_new_email_ownership(
    body: SsoNewEmailRequest, principal: Principal = Depends(get_principal)
):
    runtime = get_runtime()
    proof = await runtime.sso.verify_new_email_ownership(
        principal.account, body.new_email, body.id_token
    )
    return Envelope(
        status="ok",
        data=ProofResponse(proof=proof, expires_in=runtime.settings.sso_proof_ttl_minutes * 60),
    )


@router.post("/auth/change-email-sso", response_model=Envelope, tags=["auth"])
async def change_email_sso(
    body: SsoEmailChangeRequest, principal: Principal = Depends(get_principal)
):
    runtime = get_runtime()
    account = await runtime.sso.change_email_sso(
        principal.account, body.old_email_proof, body.new_email_proof
    )
    return Envelope(
        status="ok",
        data={"account": _account_body(account), "message": "email changed"},
    )


# -- one-time codes ---------------------------------------------------------


@router.post("/auth/send-otp", response_model=Envelope, tags=["auth"])
async def send_otp(body: EmailRequest):
    runtime = get_runtime()
    await runtime.otp.send_otp(body.email)
    return Envelope(status="ok", data={"message": _GENERIC_OTP_MESSAGE})


@router.post("/auth/verify-otp", response_model=Envelope, tags=["auth"])
async def verify_otp(body: OtpVerifyRequest):
    runtime = get_runtime()
    await runtime.otp.verify_otp(body.email, body.code)
    return Envelope(status="ok", data={"verified": True})


# -- inter-service ----------------------------------------------------------


@router.get("/system/verify-token", response_model=TokenVerification, tags=["system"])
async def verify_system_token(authorization: Optional[str] = Header(None)):
    """Validate an applicant access token for another system.

    Checks signature, issuer/audience and expiry only. Tokens revoked by
    logout stay valid here until they expire.
    """
    runtime = get_runtime()
    token = _extract_bearer(authorization)
    if not token:
        body = TokenVerification(
            valid=False, message="missing or invalid Authorization header"
        )
        return JSONResponse(status_code=400, content=body.model_dump())
    try:
        claims = runtime.tokens.verify_signature_and_expiry(token)
    except ServiceError as exc:
        logger.info("system_token_rejected", reason=exc.reason)
        body = TokenVerification(
            valid=False, system_id=runtime.settings.system_id, message=exc.message
        )
        return JSONResponse(status_code=200, content=body.model_dump())
    body = TokenVerification(
        valid=True,
        system_id=runtime.settings.system_id,
        subject=claims.subject,
        username=claims.email,
        message="token is valid",
    )
    return JSONResponse(status_code=200, content=body.model_dump())
