"""
Credential Resolver
Maps a person (account id, roster id) to the canonical account's Google OAuth
credential and refreshes expired access tokens.
"""
import base64
import hashlib
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Optional

import httpx
from cryptography.fernet import Fernet, InvalidToken
from sqlalchemy import func
from sqlalchemy.orm import Session

from ...config import (
    CALENDAR_PROVIDER_TIMEOUT_SECONDS,
    CALENDAR_TOKEN_REFRESH_MARGIN_SECONDS,
    GOOGLE_CLIENT_ID,
    GOOGLE_CLIENT_SECRET,
    SECRET_KEY,
    TOKEN_ENCRYPTION_KEY,
)
from ...models import TeamMember, User
from ...models_google_calendar import GoogleCalendarCredential
from .exceptions import AuthExpiredError, NoCredentialsError
from .repository import PRIMARY_CALENDAR_ID
from .time_normalizer import utcnow

logger = logging.getLogger(__name__)

GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"  # noqa: S105 - OAuth endpoint URL


def get_fernet_key() -> bytes:
    if TOKEN_ENCRYPTION_KEY:
        return TOKEN_ENCRYPTION_KEY.encode()
    key = hashlib.sha256(SECRET_KEY.encode()).digest()
    return base64.urlsafe_b64encode(key)


cipher_suite = Fernet(get_fernet_key())


def encrypt_token(token: str) -> str:
    return cipher_suite.encrypt(token.encode()).decode()


def decrypt_token(token: str) -> str:
    return cipher_suite.decrypt(token.encode()).decode()


def mask_token(token: Optional[str], visible_chars: int = 6) -> str:
    """Short prefix for diagnostics; never log a full token"""
    if not token:
        return "<none>"
    return f"{token[:visible_chars]}…"


@dataclass(frozen=True)
class CredentialHandle:
    """Opaque handle handed to the calendar client"""

    account_id: str
    access_token: str = field(repr=False)
    calendar_id: str = PRIMARY_CALENDAR_ID
    email: Optional[str] = None
    expires_at: Optional[datetime] = None

    @property
    def token_hint(self) -> str:
        return mask_token(self.access_token)

    @property
    def authorization_header(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.access_token}"}


class CredentialStore:
    """Persistence for credential records and account identity lookups"""

    def __init__(self, db: Session):
        self.db = db

    def get_credential(self, account_id: str) -> Optional[GoogleCalendarCredential]:
        return (
            self.db.query(GoogleCalendarCredential)
            .filter(GoogleCalendarCredential.account_id == account_id)
            .first()
        )

    def find_account_id(self, person_id: str) -> Optional[str]:
        """Resolve a roster id to its canonical account id: linked user first, then by email"""
        member = self.db.query(TeamMember).filter(TeamMember.id == person_id).first()
        if not member:
            return None
        if member.user_id:
            return member.user_id
        return self.find_account_id_by_email(member.email)

    def find_account_id_by_email(self, email: Optional[str]) -> Optional[str]:
        if not email:
            return None
        user = (
            self.db.query(User)
            .filter(func.lower(User.email) == email.strip().lower())
            .first()
        )
        return user.id if user else None

    def save_credential(self, account_id: str, tokens: dict[str, Any]) -> GoogleCalendarCredential:
        """
        Create or replace the credential record for an account.

        ``tokens`` follows Google's token response: access_token, refresh_token,
        expires_in, scope; plus optional email and calendar_id from the handshake.
        """
        access_token = tokens.get("access_token")
        if not access_token:
            raise ValueError("access_token is required")

        expires_at = tokens.get("expires_at") or utcnow() + timedelta(
            seconds=int(tokens.get("expires_in", 3600))
        )

        credential = self.get_credential(account_id)
        if credential:
            credential.access_token = encrypt_token(access_token)
            # Google only returns a refresh token on first consent or rotation
            if tokens.get("refresh_token"):
                credential.refresh_token = encrypt_token(tokens["refresh_token"])
            credential.token_expires_at = expires_at
            if tokens.get("scope"):
                credential.scope = tokens["scope"]
            if tokens.get("email"):
                credential.google_user_email = tokens["email"]
            if tokens.get("calendar_id"):
                credential.google_calendar_id = tokens["calendar_id"]
        else:
            refresh_token = tokens.get("refresh_token")
            if not refresh_token:
                raise ValueError("refresh_token is required for a new credential")
            credential = GoogleCalendarCredential(
                account_id=account_id,
                access_token=encrypt_token(access_token),
                refresh_token=encrypt_token(refresh_token),
                token_expires_at=expires_at,
                scope=tokens.get("scope"),
                google_user_email=tokens.get("email"),
                google_calendar_id=tokens.get("calendar_id") or PRIMARY_CALENDAR_ID,
            )
            self.db.add(credential)

        self.db.commit()
        self.db.refresh(credential)
        return credential

    def delete_credential(self, account_id: str) -> bool:
        credential = self.get_credential(account_id)
        if not credential:
            return False
        self.db.delete(credential)
        self.db.commit()
        return True


class CredentialResolver:
    """Resolves a person id to a usable, non-expired CredentialHandle"""

    def __init__(
        self,
        db: Session,
        http_client: Optional[httpx.AsyncClient] = None,
        refresh_margin_seconds: int = CALENDAR_TOKEN_REFRESH_MARGIN_SECONDS,
    ):
        self.store = CredentialStore(db)
        self.http_client = http_client
        self.refresh_margin = timedelta(seconds=refresh_margin_seconds)

    def lookup(self, person_id: str) -> tuple[str, GoogleCalendarCredential]:
        """Canonical id lookup first, then roster id (or bare email) -> email -> canonical id"""
        credential = self.store.get_credential(person_id)
        if credential:
            return person_id, credential

        account_id = self.store.find_account_id(person_id)
        if not account_id and "@" in person_id:
            account_id = self.store.find_account_id_by_email(person_id)
        if account_id:
            credential = self.store.get_credential(account_id)
            if credential:
                return account_id, credential

        raise NoCredentialsError(f"No Google Calendar credentials for {person_id}")

    async def resolve(self, person_id: str) -> CredentialHandle:
        account_id, credential = self.lookup(person_id)

        if credential.token_expires_at <= utcnow() + self.refresh_margin:
            logger.info(f"🔄 Google Calendar token expired for account {account_id}, refreshing...")
            credential = await self.refresh(credential)

        try:
            access_token = decrypt_token(credential.access_token)
        except InvalidToken as e:
            raise AuthExpiredError(f"Stored access token for {account_id} is unreadable") from e

        handle = CredentialHandle(
            account_id=account_id,
            access_token=access_token,
            calendar_id=credential.google_calendar_id or PRIMARY_CALENDAR_ID,
            email=credential.google_user_email,
            expires_at=credential.token_expires_at,
        )
        logger.debug(f"Resolved credentials for {person_id} -> {account_id} ({handle.token_hint})")
        return handle

    async def refresh(self, credential: GoogleCalendarCredential) -> GoogleCalendarCredential:
        """Exchange the refresh token and persist the rotated tokens; never falls back"""
        account_id = credential.account_id
        try:
            refresh_token = decrypt_token(credential.refresh_token)
        except InvalidToken as e:
            raise AuthExpiredError(f"Stored refresh token for {account_id} is unreadable") from e

        data = {
            "client_id": GOOGLE_CLIENT_ID or "",
            "client_secret": GOOGLE_CLIENT_SECRET or "",
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
        }
        try:
            if self.http_client is not None:
                response = await self.http_client.post(GOOGLE_TOKEN_URL, data=data)
            else:
                async with httpx.AsyncClient(timeout=CALENDAR_PROVIDER_TIMEOUT_SECONDS) as client:
                    response = await client.post(GOOGLE_TOKEN_URL, data=data)
        except httpx.HTTPError as e:
            logger.error(f"❌ Token refresh request failed for account {account_id}: {e}")
            raise AuthExpiredError(f"Token refresh failed for {account_id}: {e}") from e

        if response.status_code != 200:
            logger.error(f"❌ Token refresh failed for account {account_id}: HTTP {response.status_code}")
            raise AuthExpiredError(
                f"Token refresh failed for {account_id} (HTTP {response.status_code})"
            )

        try:
            tokens = response.json()
        except ValueError as e:
            raise AuthExpiredError(f"Token refresh for {account_id} returned invalid JSON") from e

        if not tokens.get("access_token"):
            logger.error("❌ No access token in refresh response")
            raise AuthExpiredError(f"Token refresh for {account_id} returned no access token")

        credential = self.store.save_credential(account_id, tokens)
        logger.info(
            f"✅ Google Calendar token refreshed for account {account_id} "
            f"({mask_token(tokens['access_token'])})"
        )
        return credential
