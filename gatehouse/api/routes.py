from __future__ import annotations

from fastapi import APIRouter, Depends, Path, Request, Response

from gatehouse.api.schemas import (
    AccountUpdateRequest,
    ActiveSessionResponse,
    EmailRequest,
    Envelope,
    LoginRequest,
    MessageResponse,
    PasswordResetConfirm,
    SessionListResponse,
    SignInResponse,
    SignupRequest,
    UserResponse,
)
from gatehouse.logging import get_logger
from gatehouse.service.context import RequestContext
from gatehouse.service.errors import AccountUnconfirmed
from gatehouse.service.password_reset import ResetRequestOutcome
from gatehouse.service.runtime import Runtime, get_runtime
from gatehouse.storage.models import User

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def apply_context_cookies(response: Response, ctx: RequestContext, runtime: Runtime) -> None:
    """Write the session cookie and any pending cookie changes onto ``response``."""
    settings = runtime.settings
    if ctx.session_dirty:
        if ctx.session:
            response.set_cookie(
                settings.session_cookie_name,
                runtime.session_signer.dumps(ctx.session),
                httponly=True,
                secure=settings.cookie_secure,
                samesite="lax",
                path="/",
            )
        else:
            response.delete_cookie(
                settings.session_cookie_name,
                path="/",
                secure=settings.cookie_secure,
                httponly=True,
                samesite="lax",
            )
    for mutation in ctx.cookie_mutations.values():
        if mutation.is_delete:
            response.delete_cookie(
                mutation.name,
                path="/",
                secure=settings.cookie_secure,
                httponly=True,
                samesite="lax",
            )
        else:
            response.set_cookie(
                mutation.name,
                mutation.value,
                max_age=mutation.max_age,
                httponly=True,
                secure=settings.cookie_secure,
                samesite="lax",
                path="/",
            )


def get_request_context(request: Request) -> RequestContext:
    runtime = get_runtime()
    settings = runtime.settings
    ctx = RequestContext(
        session=runtime.session_signer.loads(
            request.cookies.get(settings.session_cookie_name)
        ),
        remember_cookie=request.cookies.get(settings.remember_cookie_name),
        user_agent=request.headers.get("user-agent"),
        ip_address=request.client.host if request.client else None,
    )
    # Picked up by the cookie middleware once the response exists
    request.state.auth_ctx = ctx
    return ctx


async def get_current_user(
    request: Request, ctx: RequestContext = Depends(get_request_context)
) -> User:
    return_to = request.url.path if request.method == "GET" else None
    return await get_runtime().auth.require_authenticated(ctx, return_to=return_to)


async def require_anonymous(
    ctx: RequestContext = Depends(get_request_context),
) -> RequestContext:
    await get_runtime().auth.redirect_if_authenticated(ctx)
    return ctx


@router.post("/users", response_model=Envelope, status_code=201, tags=["users"])
async def sign_up(body: SignupRequest, ctx: RequestContext = Depends(require_anonymous)):
    """Create an unconfirmed account and email its confirmation link."""
    runtime = get_runtime()
    user = await runtime.accounts.sign_up(
        body.email, body.password, body.password_confirmation
    )
    return Envelope(
        status="ok",
        data={
            "user": UserResponse.from_user(user).model_dump(mode="json"),
            "message": "Please check your email for confirmation instructions.",
        },
    )


@router.post("/sessions", response_model=Envelope, tags=["sessions"])
async def sign_in(body: LoginRequest, ctx: RequestContext = Depends(require_anonymous)):
    """Log in with email and password.

    Raises:
        401: incorrect_credentials for an unknown email or wrong password
        403: account_unconfirmed when the email has not been confirmed yet
    """
    runtime = get_runtime()
    active_session = await runtime.auth.sign_in(
        ctx, body.email, body.password, remember_me=body.remember_me
    )
    user = ctx.current_user
    return Envelope(
        status="ok",
        data=SignInResponse(
            user=UserResponse.from_user(user),
            active_session_id=active_session.id,
            remembered=body.remember_me,
            return_to=ctx.pop_return_to(),
        ).model_dump(mode="json"),
    )


@router.delete("/sessions", response_model=Envelope, tags=["sessions"])
async def sign_out(ctx: RequestContext = Depends(get_request_context)):
    await get_runtime().auth.logout(ctx)
    return Envelope(status="ok", data=MessageResponse(message="Signed out.").model_dump())


@router.post("/confirmations", response_model=Envelope, status_code=202, tags=["confirmations"])
async def request_confirmation(
    body: EmailRequest, ctx: RequestContext = Depends(require_anonymous)
):
    """Resend confirmation instructions; the response never reveals whether the email exists."""
    await get_runtime().confirmations.request_confirmation(body.email)
    return Envelope(
        status="ok",
        data=MessageResponse(
            message=(
                "If that account exists and still needs confirmation, "
                "instructions have been sent."
            )
        ).model_dump(),
    )


@router.get("/confirmations/{token}", response_model=Envelope, tags=["confirmations"])
async def confirm_email(
    token: str = Path(..., min_length=1, max_length=2048),
    ctx: RequestContext = Depends(get_request_context),
):
    runtime = get_runtime()
    user = await runtime.confirmations.confirm(token)
    current = await runtime.auth.resolve_current_user(ctx)
    # Someone confirming their own pending email change keeps their session
    if current is None or current.id != user.id:
        await runtime.auth.login(ctx, user)
    return Envelope(
        status="ok",
        data={
            "user": UserResponse.from_user(user).model_dump(mode="json"),
            "message": "Your account has been confirmed.",
        },
    )


@router.post("/passwords", response_model=Envelope, status_code=202, tags=["passwords"])
async def request_password_reset(
    body: EmailRequest, ctx: RequestContext = Depends(require_anonymous)
):
    outcome = await get_runtime().password_resets.request_reset(body.email)
    if outcome is ResetRequestOutcome.UNCONFIRMED:
        raise AccountUnconfirmed("Please confirm your email first.")
    return Envelope(
        status="ok",
        data=MessageResponse(
            message="If that user exists we've sent instructions to their email."
        ).model_dump(),
    )


@router.get("/passwords/{token}", response_model=Envelope, tags=["passwords"])
async def check_password_reset(
    token: str = Path(..., min_length=1, max_length=2048),
    ctx: RequestContext = Depends(require_anonymous),
):
    await get_runtime().password_resets.check_reset_token(token)
    return Envelope(status="ok", data=MessageResponse(message="Token is valid.").model_dump())


@router.put("/passwords/{token}", response_model=Envelope, tags=["passwords"])
async def reset_password(
    body: PasswordResetConfirm,
    token: str = Path(..., min_length=1, max_length=2048),
    ctx: RequestContext = Depends(require_anonymous),
):
    await get_runtime().password_resets.consume_reset(
        token, body.password, body.password_confirmation
    )
    return Envelope(status="ok", data=MessageResponse(message="Password updated.").model_dump())


@router.get("/account", response_model=Envelope, tags=["account"])
async def get_account(user: User = Depends(get_current_user)):
    return Envelope(status="ok", data=UserResponse.from_user(user).model_dump(mode="json"))


@router.put("/account", response_model=Envelope, tags=["account"])
async def update_account(
    body: AccountUpdateRequest, user: User = Depends(get_current_user)
):
    updated = await get_runtime().accounts.update_account(
        user,
        body.current_password,
        email=body.email,
        password=body.password,
        password_confirmation=body.password_confirmation,
    )
    message = "Account updated."
    if updated.unconfirmed_email and updated.unconfirmed_email != user.unconfirmed_email:
        message = "Check your email for confirmation instructions."
    return Envelope(
        status="ok",
        data={
            "user": UserResponse.from_user(updated).model_dump(mode="json"),
            "message": message,
        },
    )


@router.delete("/account", response_model=Envelope, tags=["account"])
async def delete_account(
    user: User = Depends(get_current_user),
    ctx: RequestContext = Depends(get_request_context),
):
    await get_runtime().accounts.delete_account(ctx, user)
    return Envelope(
        status="ok", data=MessageResponse(message="Your account has been deleted.").model_dump()
    )


@router.get("/account/sessions", response_model=Envelope, tags=["account"])
async def list_sessions(
    user: User = Depends(get_current_user),
    ctx: RequestContext = Depends(get_request_context),
):
    runtime = get_runtime()
    sessions = await runtime.auth.list_sessions(ctx)
    current = ctx.current_session
    return Envelope(
        status="ok",
        data=SessionListResponse(
            items=[
                ActiveSessionResponse.from_session(
                    item, current_id=current.id if current else None
                )
                for item in sessions
            ]
        ).model_dump(mode="json"),
    )


@router.delete("/account/sessions/{session_id}", response_model=Envelope, tags=["account"])
async def revoke_session(
    session_id: str = Path(..., min_length=1, max_length=64),
    user: User = Depends(get_current_user),
    ctx: RequestContext = Depends(get_request_context),
):
    signed_in = await get_runtime().auth.revoke_session(ctx, session_id)
    return Envelope(
        status="ok",
        data={
            "signed_in": signed_in,
            "message": "Session deleted." if signed_in else "Signed out.",
        },
    )


@router.delete("/account/sessions", response_model=Envelope, tags=["account"])
async def revoke_all_sessions(
    user: User = Depends(get_current_user),
    ctx: RequestContext = Depends(get_request_context),
):
    removed = await get_runtime().auth.revoke_all_sessions(ctx)
    return Envelope(status="ok", data={"revoked": removed, "message": "Signed out."})
