"""
Calendar credential lifecycle
Encrypts OAuth credentials at rest, hands adapters a usable access token and
refreshes or validates tokens per provider.
"""

import base64
import hashlib
import logging
from datetime import timedelta
from typing import Callable, Optional

from cryptography.fernet import Fernet, InvalidToken, MultiFernet
from pydantic import ValidationError
from sqlalchemy.orm import Session

from ...config import CALENDAR_ENCRYPTION_KEY, SECRET_KEY
from ...shared.locks import KeyedLock
from ...shared.timeutils import utcnow
from .errors import ConnectionUnavailableError, CredentialError, UnsupportedProviderError
from .repository import SyncRepository
from .schemas import CredentialValidation, OAuthCredentials, ResolvedConnection

logger = logging.getLogger(__name__)

# Refresh this long before the provider's expiry so in-flight calls don't race it
REFRESH_SKEW = timedelta(minutes=5)


def derive_fernet_key(secret: str) -> str:
    """Fernet key derived from an arbitrary secret string"""
    return base64.urlsafe_b64encode(hashlib.sha256(secret.encode()).digest()).decode()


class TokenCipher:
    """
    Symmetric cipher for credential blobs.

    The first key encrypts; all keys are tried when decrypting, so rotating
    means prepending a new key and keeping the old one until blobs are rewritten.
    """

    def __init__(self, keys: list[str]):
        if not keys:
            raise ValueError("TokenCipher needs at least one key")
        self._fernet = MultiFernet([Fernet(key.encode() if isinstance(key, str) else key) for key in keys])

    @classmethod
    def from_config(cls, raw_keys: Optional[str] = None, secret_key: Optional[str] = None) -> "TokenCipher":
        raw_keys = raw_keys if raw_keys is not None else CALENDAR_ENCRYPTION_KEY
        keys = [key.strip() for key in (raw_keys or "").split(",") if key.strip()]
        if not keys:
            logger.warning("⚠️ CALENDAR_ENCRYPTION_KEY not set, deriving calendar key from SECRET_KEY")
            keys = [derive_fernet_key(secret_key or SECRET_KEY)]
        return cls(keys)

    def encrypt(self, plaintext: str) -> str:
        return self._fernet.encrypt(plaintext.encode()).decode()

    def decrypt(self, blob: str) -> str:
        try:
            return self._fernet.decrypt(blob.encode()).decode()
        except InvalidToken as e:
            raise CredentialError("Stored calendar credentials could not be decrypted") from e


class TokenClient:
    """Provider-specific token operations used by CredentialManager"""

    provider: str = ""
    supports_refresh: bool = False

    async def refresh(self, credentials: OAuthCredentials) -> OAuthCredentials:
        raise NotImplementedError

    async def validate(self, calendar_id: str, credentials: OAuthCredentials) -> CredentialValidation:
        raise NotImplementedError


class CredentialManager:
    """Owns credential blobs of calendar connections"""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        cipher: TokenCipher,
        token_clients: dict[str, TokenClient],
        now_fn: Callable = utcnow,
    ):
        self._session_factory = session_factory
        self._cipher = cipher
        self._token_clients = token_clients
        self._now = now_fn
        self._refresh_locks = KeyedLock()

    # ------------------------------------------------------------------
    # Encryption
    # ------------------------------------------------------------------

    def encrypt(self, plaintext: str) -> str:
        return self._cipher.encrypt(plaintext)

    def decrypt(self, blob: str) -> str:
        return self._cipher.decrypt(blob)

    def encrypt_credentials(self, credentials: OAuthCredentials) -> str:
        return self.encrypt(credentials.model_dump_json())

    def decrypt_credentials(self, blob: str) -> OAuthCredentials:
        plaintext = self.decrypt(blob)
        try:
            return OAuthCredentials.model_validate_json(plaintext)
        except ValidationError as e:
            raise CredentialError("Stored calendar credentials are malformed") from e

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _token_client(self, provider: str) -> TokenClient:
        client = self._token_clients.get(provider)
        if client is None:
            raise UnsupportedProviderError(f"No token client for provider: {provider}")
        return client

    def _load(self, connection_id: int) -> tuple[str, str, OAuthCredentials]:
        db = self._session_factory()
        try:
            connection = SyncRepository.get_connection(db, connection_id)
            if not connection or not connection.is_active:
                raise ConnectionUnavailableError(f"Calendar connection {connection_id} is not active")
            provider = connection.provider
            calendar_id = connection.external_calendar_id or "primary"
            blob = connection.credential_blob
        finally:
            db.close()
        return provider, calendar_id, self.decrypt_credentials(blob)

    def _store(self, connection_id: int, credentials: OAuthCredentials) -> None:
        db = self._session_factory()
        try:
            SyncRepository.update_credentials(db, connection_id, self.encrypt_credentials(credentials))
        finally:
            db.close()

    def _expires_soon(self, credentials: OAuthCredentials) -> bool:
        return credentials.expires_at is not None and credentials.expires_at <= self._now() + REFRESH_SKEW

    async def resolve(self, connection_id: int) -> ResolvedConnection:
        """Decrypted access token and calendar of a connection, refreshed ahead of expiry when possible"""
        provider, calendar_id, credentials = self._load(connection_id)

        if self._expires_soon(credentials) and self._token_client(provider).supports_refresh:
            logger.info(f"🔄 {provider} token for connection {connection_id} expiring, refreshing...")
            credentials = await self.refresh(connection_id)

        return ResolvedConnection(
            connection_id=connection_id,
            provider=provider,
            calendar_id=calendar_id,
            access_token=credentials.access_token,
        )

    async def refresh(self, connection_id: int) -> OAuthCredentials:
        """
        Refresh and persist the connection's credentials.

        Raises ReauthRequired when the provider needs the owner to reconnect,
        CredentialError for any other refresh failure.
        """
        async with self._refresh_locks.acquire(connection_id):
            provider, _, credentials = self._load(connection_id)
            client = self._token_client(provider)

            try:
                refreshed = await client.refresh(credentials)
            except CredentialError:
                logger.warning(f"⚠️ {provider} token refresh failed for connection {connection_id}")
                raise
            except Exception as e:
                raise CredentialError(f"{provider} token refresh failed: {e}") from e

            if not refreshed.refresh_token:
                refreshed = refreshed.model_copy(update={"refresh_token": credentials.refresh_token})

            self._store(connection_id, refreshed)
            logger.info(f"✅ {provider} token refreshed for connection {connection_id}")
            return refreshed

    async def validate(self, connection_id: int) -> CredentialValidation:
        """Local expiry check, then a lightweight provider call. Never changes the connection."""
        try:
            provider, calendar_id, credentials = self._load(connection_id)
        except CredentialError as e:
            return CredentialValidation(valid=False, error=str(e))

        if credentials.expires_at is not None and credentials.expires_at <= self._now():
            return CredentialValidation(valid=False, error="Token expired")

        try:
            return await self._token_client(provider).validate(calendar_id, credentials)
        except Exception as e:
            logger.warning(f"⚠️ Credential validation failed for connection {connection_id}: {e}")
            return CredentialValidation(valid=False, error=str(e))
