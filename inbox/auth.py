"""
Session authentication with email/password and OAuth social login.

Sessions are opaque random tokens stored in `auth_sessions` and carried in
an HttpOnly cookie. OAuth `state` is a short-lived JWT signed with
AUTH_SECRET carrying the provider and the post-login callback URL.
"""

import logging
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Annotated, Callable, Optional
from urllib.parse import urlencode

import httpx
import jwt
from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status
from fastapi.responses import RedirectResponse
from passlib.context import CryptContext
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from inbox.config import settings
from inbox.models import Account, AuthSession, User
from inbox.schemas import (
    SessionInfo,
    SessionResponse,
    SignInRequest,
    SignUpRequest,
    SocialSignInRequest,
    SocialSignInResponse,
    UserResponse,
)
from inbox.storage import get_db
from inbox.utils import utcnow

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["auth"])

SESSION_COOKIE = "inbox_session"
OAUTH_STATE_MAX_AGE = 300  # 5 minutes
DEFAULT_CALLBACK_URL = "/dashboard"

pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")


# =============================================================================
# OAuth Providers
# =============================================================================

@dataclass(frozen=True)
class OAuthProvider:
    id: str
    authorize_url: str
    token_url: str
    userinfo_url: str
    scope: str
    profile: Callable[[dict], dict]
    extra_params: dict = field(default_factory=dict)

    @property
    def client_id(self) -> Optional[str]:
        return getattr(settings, f"{self.id.upper()}_CLIENT_ID")

    @property
    def client_secret(self) -> Optional[str]:
        return getattr(settings, f"{self.id.upper()}_CLIENT_SECRET")

    @property
    def redirect_uri(self) -> str:
        return f"{settings.AUTH_BASE_URL.rstrip('/')}/api/auth/callback/{self.id}"

    @property
    def enabled(self) -> bool:
        return bool(self.client_id and self.client_secret)


PROVIDERS = {
    "github": OAuthProvider(
        id="github",
        authorize_url="https://github.com/login/oauth/authorize",
        token_url="https://github.com/login/oauth/access_token",
        userinfo_url="https://api.github.com/user",
        scope="user:email",
        profile=lambda p: {
            "id": str(p["id"]),
            "name": p.get("name") or p.get("login"),
            "email": p.get("email"),
            "image": p.get("avatar_url"),
        },
    ),
    "google": OAuthProvider(
        id="google",
        authorize_url="https://accounts.google.com/o/oauth2/v2/auth",
        token_url="https://oauth2.googleapis.com/token",
        userinfo_url="https://openidconnect.googleapis.com/v1/userinfo",
        scope="openid email profile",
        profile=lambda p: {
            "id": str(p["sub"]),
            "name": p.get("name"),
            "email": p.get("email"),
            "image": p.get("picture"),
        },
        extra_params={"prompt": "consent", "access_type": "offline"},
    ),
}


class OAuthError(Exception):
    """Any failure while completing an OAuth login."""


def get_provider(provider_id: Optional[str]) -> OAuthProvider:
    provider = PROVIDERS.get(provider_id or "")
    if provider is None or not provider.enabled:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Unsupported provider")
    return provider


def safe_callback_url(url: Optional[str]) -> str:
    """Only same-site relative paths are accepted as post-login redirects."""
    if not url or not url.startswith("/") or url.startswith("//"):
        return DEFAULT_CALLBACK_URL
    return url


def create_oauth_state(provider_id: str, callback_url: str) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "provider": provider_id,
        "callback_url": callback_url,
        "nonce": secrets.token_urlsafe(16),
        "iat": now,
        "exp": now + timedelta(seconds=OAUTH_STATE_MAX_AGE),
    }
    return jwt.encode(payload, settings.AUTH_SECRET, algorithm="HS256")


def decode_oauth_state(state: str, provider_id: str) -> dict:
    try:
        payload = jwt.decode(state, settings.AUTH_SECRET, algorithms=["HS256"])
    except jwt.InvalidTokenError as e:
        raise OAuthError("Invalid or expired state") from e
    if payload.get("provider") != provider_id:
        raise OAuthError("State does not match provider")
    return payload


async def exchange_code(provider: OAuthProvider, code: str) -> dict:
    """
    Exchange an authorization code for tokens.

    Raises:
        OAuthError: provider rejected the code
    """
    async with httpx.AsyncClient(timeout=10.0) as client:
        response = await client.post(
            provider.token_url,
            data={
                "client_id": provider.client_id,
                "client_secret": provider.client_secret,
                "code": code,
                "redirect_uri": provider.redirect_uri,
                "grant_type": "authorization_code",
            },
            headers={"Accept": "application/json"},
        )
    try:
        data = response.json()
    except ValueError as e:
        raise OAuthError(f"Token endpoint returned {response.status_code}") from e
    if response.status_code >= 400 or not isinstance(data, dict) or "access_token" not in data:
        error = data.get("error_description") if isinstance(data, dict) else None
        raise OAuthError(error or "Failed to get access token")
    return data


async def fetch_profile(provider: OAuthProvider, access_token: str) -> dict:
    """Fetch the user's profile and map it to {id, name, email, image}."""
    headers = {"Authorization": f"Bearer {access_token}", "Accept": "application/json"}
    async with httpx.AsyncClient(timeout=10.0) as client:
        response = await client.get(provider.userinfo_url, headers=headers)
        response.raise_for_status()
        try:
            profile = provider.profile(response.json())

            # GitHub hides the address unless it is public
            if provider.id == "github" and not profile["email"]:
                emails = await client.get("https://api.github.com/user/emails", headers=headers)
                if emails.status_code == 200:
                    primary = next((e for e in emails.json() if e.get("primary") and e.get("verified")), None)
                    if primary:
                        profile["email"] = primary["email"]
        except ValueError as e:
            raise OAuthError("Invalid profile response") from e
    return profile


# =============================================================================
# Users and Sessions
# =============================================================================

def upsert_oauth_user(db: Session, provider_id: str, profile: dict, tokens: dict) -> User:
    """Resolve the user for an OAuth identity, linking by email or creating one."""
    account = (
        db.query(Account)
        .filter(Account.provider == provider_id, Account.provider_account_id == profile["id"])
        .first()
    )
    if account is not None:
        account.access_token = tokens.get("access_token")
        account.refresh_token = tokens.get("refresh_token") or account.refresh_token
        db.commit()
        return account.user

    email = profile.get("email").lower() if profile.get("email") else None
    user = db.query(User).filter(User.email == email).first() if email else None
    if user is None:
        user = User(name=profile.get("name") or email or provider_id, email=email, image=profile.get("image"))
        db.add(user)

    db.add(Account(
        user=user,
        provider=provider_id,
        provider_account_id=profile["id"],
        access_token=tokens.get("access_token"),
        refresh_token=tokens.get("refresh_token"),
    ))
    db.commit()
    db.refresh(user)
    logger.info(f"Linked {provider_id} account to user {user.id}")
    return user


def create_session(db: Session, user: User, user_agent: Optional[str] = None) -> AuthSession:
    now = utcnow()
    auth_session = AuthSession(
        user_id=user.id,
        token=secrets.token_urlsafe(32),
        expires_at=now + timedelta(seconds=settings.SESSION_EXPIRES_SECONDS),
        created_at=now,
        updated_at=now,
        user_agent=user_agent,
    )
    db.add(auth_session)
    db.commit()
    db.refresh(auth_session)
    return auth_session


def resolve_session(db: Session, token: Optional[str]) -> Optional[AuthSession]:
    """
    Look up a live session, sliding its expiry forward once it is older
    than SESSION_UPDATE_AGE_SECONDS. Expired sessions are deleted.
    """
    if not token:
        return None
    auth_session = db.query(AuthSession).filter(AuthSession.token == token).first()
    if auth_session is None:
        return None

    now = utcnow()
    if auth_session.expires_at <= now:
        db.delete(auth_session)
        db.commit()
        return None

    if now - auth_session.updated_at >= timedelta(seconds=settings.SESSION_UPDATE_AGE_SECONDS):
        auth_session.expires_at = now + timedelta(seconds=settings.SESSION_EXPIRES_SECONDS)
        auth_session.updated_at = now
        db.commit()
    return auth_session


def set_session_cookie(response: Response, auth_session: AuthSession) -> None:
    response.set_cookie(
        key=SESSION_COOKIE,
        value=auth_session.token,
        max_age=settings.SESSION_EXPIRES_SECONDS,
        httponly=True,
        samesite="lax",
        secure=settings.COOKIE_SECURE,
        path="/",
    )


def session_payload(auth_session: AuthSession) -> SessionResponse:
    return SessionResponse(
        user=UserResponse.model_validate(auth_session.user),
        session=SessionInfo.model_validate(auth_session),
    )


def get_current_user(request: Request, db: Session = Depends(get_db)) -> User:
    """Dependency: the signed-in user, or 401."""
    auth_session = resolve_session(db, request.cookies.get(SESSION_COOKIE))
    if auth_session is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    return auth_session.user


# =============================================================================
# Email / Password Routes
# =============================================================================

@router.post("/sign-up/email", response_model=SessionResponse)
async def sign_up_email(
    payload: SignUpRequest,
    request: Request,
    response: Response,
    db: Session = Depends(get_db),
) -> SessionResponse:
    if len(payload.password) < settings.MIN_PASSWORD_LENGTH:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Password must be at least {settings.MIN_PASSWORD_LENGTH} characters",
        )

    user = User(
        name=payload.name,
        email=payload.email.lower(),
        password_hash=pwd_context.hash(payload.password),
    )
    db.add(user)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="User already exists")

    auth_session = create_session(db, user, request.headers.get("user-agent"))
    set_session_cookie(response, auth_session)
    logger.info(f"User signed up: {user.id}")
    return session_payload(auth_session)


@router.post("/sign-in/email", response_model=SessionResponse)
async def sign_in_email(
    payload: SignInRequest,
    request: Request,
    response: Response,
    db: Session = Depends(get_db),
) -> SessionResponse:
    user = db.query(User).filter(User.email == payload.email.lower()).first()
    if user is None or not user.password_hash or not pwd_context.verify(payload.password, user.password_hash):
        logger.warning("Failed email sign-in")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid email or password")

    auth_session = create_session(db, user, request.headers.get("user-agent"))
    set_session_cookie(response, auth_session)
    return session_payload(auth_session)


@router.post("/sign-out")
async def sign_out(request: Request, response: Response, db: Session = Depends(get_db)) -> dict:
    token = request.cookies.get(SESSION_COOKIE)
    if token:
        db.query(AuthSession).filter(AuthSession.token == token).delete()
        db.commit()
    response.delete_cookie(SESSION_COOKIE, path="/")
    return {"success": True}


@router.get("/get-session", response_model=Optional[SessionResponse])
async def get_session(request: Request, db: Session = Depends(get_db)) -> Optional[SessionResponse]:
    auth_session = resolve_session(db, request.cookies.get(SESSION_COOKIE))
    if auth_session is None:
        return None
    return session_payload(auth_session)


@router.get("/me", response_model=UserResponse)
async def me(user: User = Depends(get_current_user)) -> UserResponse:
    return UserResponse.model_validate(user)


# =============================================================================
# Social Login Routes
# =============================================================================

@router.post("/sign-in/social", response_model=SocialSignInResponse)
async def sign_in_social(payload: SocialSignInRequest) -> SocialSignInResponse:
    """Return the URL the client should navigate to for the provider's login."""
    if not payload.provider:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Provider is required")

    query = urlencode({"provider": payload.provider, "callbackUrl": payload.callback_url})
    url = f"{settings.AUTH_BASE_URL.rstrip('/')}/api/auth/oauth/authorize?{query}"
    return SocialSignInResponse(url=url)


@router.get("/oauth/authorize")
async def oauth_authorize(
    provider: Annotated[Optional[str], Query()] = None,
    callback_url: Annotated[Optional[str], Query(alias="callbackUrl")] = None,
) -> RedirectResponse:
    """Redirect to the provider's authorization page."""
    oauth_provider = get_provider(provider)
    params = {
        "client_id": oauth_provider.client_id,
        "redirect_uri": oauth_provider.redirect_uri,
        "response_type": "code",
        "scope": oauth_provider.scope,
        "state": create_oauth_state(oauth_provider.id, safe_callback_url(callback_url)),
        **oauth_provider.extra_params,
    }
    logger.info(f"Starting OAuth flow with {oauth_provider.id}")
    return RedirectResponse(url=f"{oauth_provider.authorize_url}?{urlencode(params)}", status_code=302)


def _login_error_redirect(message: str) -> RedirectResponse:
    return RedirectResponse(url=f"/login?{urlencode({'error': message})}", status_code=302)


@router.get("/callback/{provider_id}")
async def oauth_callback(
    provider_id: str,
    request: Request,
    code: Optional[str] = None,
    state: Optional[str] = None,
    error: Optional[str] = None,
    db: Session = Depends(get_db),
) -> Response:
    """
    Complete an OAuth login.

    Flow:
    1. Verify the signed state
    2. Exchange the code for tokens
    3. Fetch the profile, upsert user and linked account
    4. Open a session and redirect to the callback URL
    """
    if error:
        return _login_error_redirect(error)
    if not code:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Authorization code is required")

    try:
        provider = get_provider(provider_id)
        state_payload = decode_oauth_state(state or "", provider.id)
        tokens = await exchange_code(provider, code)
        profile = await fetch_profile(provider, tokens["access_token"])
        user = upsert_oauth_user(db, provider.id, profile, tokens)
    except HTTPException:
        return _login_error_redirect("Unsupported provider")
    except (OAuthError, httpx.HTTPError, KeyError) as e:
        logger.error(f"{provider_id} callback failed: {e}")
        return _login_error_redirect(str(e) or "Authentication failed")
    except SQLAlchemyError:
        db.rollback()
        logger.exception(f"{provider_id} callback failed to store the user")
        return _login_error_redirect("Authentication failed")

    auth_session = create_session(db, user, request.headers.get("user-agent"))
    response = RedirectResponse(url=safe_callback_url(state_payload.get("callback_url")), status_code=302)
    set_session_cookie(response, auth_session)
    return response
