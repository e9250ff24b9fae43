"""Credential encryption and the refresh-before-use gate."""

import logging
from datetime import datetime, timedelta, timezone

from cryptography.fernet import Fernet, InvalidToken
from sqlalchemy.ext.asyncio import AsyncSession

from adpilot.config import get_settings
from adpilot.meta.client import GraphClient
from adpilot.meta.errors import AuthExpiredError
from adpilot.models.meta_ads import ConnectionStatus, MetaConnection

logger = logging.getLogger(__name__)

REFRESH_THRESHOLD = timedelta(minutes=5)
DEFAULT_TOKEN_LIFETIME = 5184000  # 60 days


def as_utc(value: datetime | None) -> datetime | None:
    """Some drivers hand back naive datetimes for timestamptz columns."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


class TokenService:
    def __init__(self, encryption_key: str | None = None):
        key = encryption_key if encryption_key is not None else get_settings().token_encryption_key
        self._fernet = Fernet(key.encode()) if key else None

    # -- Token encryption helpers ------------------------------------------

    def encrypt_token(self, token: str) -> str:
        if not self._fernet:
            raise RuntimeError("TOKEN_ENCRYPTION_KEY not configured")
        return self._fernet.encrypt(token.encode()).decode()

    def decrypt_token(self, encrypted: str) -> str:
        if not self._fernet:
            raise RuntimeError("TOKEN_ENCRYPTION_KEY not configured")
        try:
            return self._fernet.decrypt(encrypted.encode()).decode()
        except InvalidToken as e:
            raise AuthExpiredError("Stored access token cannot be decrypted; reconnect required") from e

    # -- Refresh gate ------------------------------------------------------

    @staticmethod
    def needs_refresh(connection: MetaConnection, now: datetime | None = None) -> bool:
        expires_at = as_utc(connection.token_expires_at)
        if expires_at is None:
            return False
        now = now or datetime.now(timezone.utc)
        return expires_at - now < REFRESH_THRESHOLD

    async def ensure_fresh_credential(
        self,
        db: AsyncSession,
        connection: MetaConnection,
        client: GraphClient,
    ) -> str:
        """Return a usable plaintext token, exchanging it first if it is about to expire."""
        if connection.status in (ConnectionStatus.REVOKED.value, ConnectionStatus.DISCONNECTED.value):
            raise AuthExpiredError(f"Connection {connection.id} is {connection.status}")

        token = self.decrypt_token(connection.access_token_encrypted)
        if not client.supports_refresh:
            return token
        if connection.status == ConnectionStatus.ACTIVE.value and not self.needs_refresh(connection):
            return token

        source = token
        if connection.refresh_token_encrypted:
            source = self.decrypt_token(connection.refresh_token_encrypted)

        logger.info("Refreshing Meta token for connection %s", connection.id)
        try:
            data = await client.exchange_token(source)
        except AuthExpiredError:
            connection.status = ConnectionStatus.EXPIRED.value
            connection.status_reason = "Token refresh rejected"
            await db.flush()
            raise

        new_token = data["access_token"]
        expires_in = int(data.get("expires_in") or DEFAULT_TOKEN_LIFETIME)
        connection.access_token_encrypted = self.encrypt_token(new_token)
        connection.token_expires_at = datetime.now(timezone.utc) + timedelta(seconds=expires_in)
        connection.status = ConnectionStatus.ACTIVE.value
        connection.status_reason = None
        await db.flush()
        logger.info("Meta token refreshed for connection %s, expires %s", connection.id, connection.token_expires_at)
        return new_token
