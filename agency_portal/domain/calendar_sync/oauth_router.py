"""
Google Calendar OAuth Routes
Handles connecting an account's Google Calendar and storing its credential
"""

import logging
from typing import Optional
from urllib.parse import urlencode

import httpx
from cryptography.fernet import InvalidToken
from fastapi import APIRouter, Depends, Header, HTTPException
from sqlalchemy.orm import Session

from ...config import (
    CALENDAR_PROVIDER_TIMEOUT_SECONDS,
    GOOGLE_CLIENT_ID,
    GOOGLE_CLIENT_SECRET,
    GOOGLE_REDIRECT_URI,
)
from ...database import get_db
from ...models import User
from .credentials import GOOGLE_TOKEN_URL, CredentialStore, cipher_suite, decrypt_token
from .repository import PRIMARY_CALENDAR_ID
from .schemas import CredentialStatusResponse, OAuthCallbackRequest

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/google-calendar", tags=["google-calendar"])

# Google OAuth URLs
GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"
GOOGLE_PRIMARY_CALENDAR_URL = "https://www.googleapis.com/calendar/v3/users/me/calendarList/primary"
GOOGLE_REVOKE_URL = "https://oauth2.googleapis.com/revoke"
GOOGLE_CALENDAR_SCOPES = [
    "https://www.googleapis.com/auth/calendar.events",
    "https://www.googleapis.com/auth/userinfo.email",
]

# Authorization round-trips must complete within this window
OAUTH_STATE_TTL_SECONDS = 600


def get_current_account(
    x_account_id: Optional[str] = Header(None), db: Session = Depends(get_db)
) -> User:
    """
    The signed-in account. Session handling lives in the auth layer in front
    of this service, which forwards the canonical account id as X-Account-Id.
    """
    if not x_account_id:
        raise HTTPException(status_code=401, detail="Not authenticated")
    user = db.query(User).filter(User.id == x_account_id).first()
    if not user:
        raise HTTPException(status_code=401, detail="Unknown account")
    return user


def get_http_client() -> Optional[httpx.AsyncClient]:
    """Override in tests to route Google traffic through a mock transport"""
    return None


def build_oauth_state(account_id: str) -> str:
    return cipher_suite.encrypt(account_id.encode()).decode()


def read_oauth_state(state: str) -> str:
    try:
        return cipher_suite.decrypt(state.encode(), ttl=OAUTH_STATE_TTL_SECONDS).decode()
    except InvalidToken as e:
        raise HTTPException(status_code=400, detail="Invalid or expired OAuth state") from e


def _json_body(response: httpx.Response) -> Optional[dict]:
    """Decoded JSON object, or None when Google answered with something else"""
    try:
        body = response.json()
    except ValueError:
        return None
    return body if isinstance(body, dict) else None


@router.get("/connect")
async def initiate_google_calendar_oauth(current_user: User = Depends(get_current_account)):
    """Initiate Google Calendar OAuth flow"""
    if not GOOGLE_CLIENT_ID or not GOOGLE_CLIENT_SECRET:
        raise HTTPException(status_code=500, detail="Google Calendar not configured")

    params = {
        "client_id": GOOGLE_CLIENT_ID,
        "redirect_uri": GOOGLE_REDIRECT_URI,
        "response_type": "code",
        "scope": " ".join(GOOGLE_CALENDAR_SCOPES),
        "access_type": "offline",
        "prompt": "consent",
        "state": build_oauth_state(current_user.id),
    }
    logger.info(f"Google Calendar OAuth initiated for account: {current_user.id}")
    return {"authorization_url": f"{GOOGLE_AUTH_URL}?{urlencode(params)}"}


@router.post("/callback")
async def handle_google_calendar_callback(
    data: OAuthCallbackRequest,
    db: Session = Depends(get_db),
    http_client: Optional[httpx.AsyncClient] = Depends(get_http_client),
):
    """Exchange the authorization code and store the credential record"""
    account_id = read_oauth_state(data.state)
    if not db.query(User).filter(User.id == account_id).first():
        raise HTTPException(status_code=404, detail="Account not found")

    client = http_client or httpx.AsyncClient(timeout=CALENDAR_PROVIDER_TIMEOUT_SECONDS)
    try:
        token_response = await client.post(
            GOOGLE_TOKEN_URL,
            data={
                "code": data.code,
                "client_id": GOOGLE_CLIENT_ID or "",
                "client_secret": GOOGLE_CLIENT_SECRET or "",
                "redirect_uri": GOOGLE_REDIRECT_URI,
                "grant_type": "authorization_code",
            },
        )
        if token_response.status_code != 200:
            logger.error(f"Token exchange failed: HTTP {token_response.status_code}")
            raise HTTPException(status_code=400, detail="Failed to exchange authorization code")

        tokens = _json_body(token_response) or {}
        access_token = tokens.get("access_token")
        if not access_token or not tokens.get("refresh_token"):
            raise HTTPException(status_code=400, detail="Invalid token response")

        headers = {"Authorization": f"Bearer {access_token}"}
        user_info_response = await client.get(GOOGLE_USERINFO_URL, headers=headers)
        if user_info_response.status_code != 200:
            logger.error(f"Failed to get user info: HTTP {user_info_response.status_code}")
            raise HTTPException(status_code=502, detail="Failed to get user info")
        user_info = _json_body(user_info_response)
        if user_info is None:
            logger.error("Failed to get user info: response was not JSON")
            raise HTTPException(status_code=502, detail="Failed to get user info")
        google_email = user_info.get("email")

        calendar_id = PRIMARY_CALENDAR_ID
        calendar_response = await client.get(GOOGLE_PRIMARY_CALENDAR_URL, headers=headers)
        if calendar_response.status_code == 200:
            calendar_id = (_json_body(calendar_response) or {}).get("id", PRIMARY_CALENDAR_ID)
    except httpx.HTTPError as e:
        logger.error(f"❌ Google Calendar callback error: {e}")
        raise HTTPException(status_code=502, detail="Google did not respond") from e
    finally:
        if http_client is None:
            await client.aclose()

    CredentialStore(db).save_credential(
        account_id,
        {**tokens, "email": google_email, "calendar_id": calendar_id},
    )
    logger.info(f"✅ Google Calendar connected for account: {account_id}")
    return {
        "success": True,
        "message": "Google Calendar connected successfully",
        "user_email": google_email,
    }


@router.get("/status", response_model=CredentialStatusResponse)
async def get_google_calendar_status(
    current_user: User = Depends(get_current_account), db: Session = Depends(get_db)
):
    """Get Google Calendar connection status"""
    credential = CredentialStore(db).get_credential(current_user.id)
    if not credential:
        return CredentialStatusResponse(connected=False, account_id=current_user.id)
    return CredentialStatusResponse(
        connected=True,
        account_id=current_user.id,
        user_email=credential.google_user_email,
        calendar_id=credential.google_calendar_id,
        scope=credential.scope,
        token_expires_at=credential.token_expires_at,
    )


@router.post("/disconnect")
async def disconnect_google_calendar(
    current_user: User = Depends(get_current_account),
    db: Session = Depends(get_db),
    http_client: Optional[httpx.AsyncClient] = Depends(get_http_client),
):
    """Disconnect Google Calendar integration"""
    store = CredentialStore(db)
    credential = store.get_credential(current_user.id)
    if not credential:
        raise HTTPException(status_code=404, detail="Google Calendar not connected")

    # Revoke Google tokens
    try:
        token = decrypt_token(credential.refresh_token)
        if http_client is not None:
            await http_client.post(GOOGLE_REVOKE_URL, params={"token": token})
        else:
            async with httpx.AsyncClient(timeout=CALENDAR_PROVIDER_TIMEOUT_SECONDS) as client:
                await client.post(GOOGLE_REVOKE_URL, params={"token": token})
    except (InvalidToken, httpx.HTTPError) as e:
        logger.warning(f"Failed to revoke Google tokens: {str(e)}")

    store.delete_credential(current_user.id)
    logger.info(f"✅ Google Calendar disconnected for account: {current_user.id}")
    return {"success": True, "message": "Google Calendar disconnected"}
