"""Tests for credential encryption, resolution, refresh and validation."""

import asyncio
from datetime import timedelta

import pytest
from cryptography.fernet import Fernet

from homesync.domain.calendar_sync.credentials import TokenCipher, derive_fernet_key
from homesync.domain.calendar_sync.errors import (
    ConnectionUnavailableError,
    CredentialError,
    ReauthRequired,
)
from homesync.domain.calendar_sync.schemas import CredentialValidation
from homesync.models_calendar_sync import SyncConnection


class TestTokenCipher:
    def test_encrypt_hides_plaintext(self, cipher):
        blob = cipher.encrypt("secret-token")
        assert "secret-token" not in blob
        assert cipher.decrypt(blob) == "secret-token"

    def test_old_key_still_decrypts_after_rotation(self):
        old_key = Fernet.generate_key().decode()
        new_key = Fernet.generate_key().decode()
        blob = TokenCipher([old_key]).encrypt("secret-token")

        rotated = TokenCipher([new_key, old_key])

        assert rotated.decrypt(blob) == "secret-token"

    def test_wrong_key_raises_credential_error(self, cipher):
        blob = TokenCipher([Fernet.generate_key().decode()]).encrypt("secret-token")
        with pytest.raises(CredentialError):
            cipher.decrypt(blob)

    def test_from_config_parses_comma_separated_keys(self):
        first, second = Fernet.generate_key().decode(), Fernet.generate_key().decode()
        blob = TokenCipher([second]).encrypt("x")
        assert TokenCipher.from_config(f"{first}, {second}").decrypt(blob) == "x"

    def test_from_config_derives_key_from_secret(self):
        cipher = TokenCipher.from_config("", secret_key="not-a-fernet-key")
        blob = TokenCipher([derive_fernet_key("not-a-fernet-key")]).encrypt("x")
        assert cipher.decrypt(blob) == "x"


class TestResolve:
    async def test_returns_decrypted_token(self, credentials, make_user, make_connection):
        connection = make_connection(make_user(), calendar_id="team@group.calendar.google.com")

        resolved = await credentials.resolve(connection.id)

        assert resolved.access_token == "access-token"
        assert resolved.calendar_id == "team@group.calendar.google.com"
        assert resolved.provider == "google"

    async def test_refreshes_google_token_ahead_of_expiry(
        self, credentials, token_clients, clock, make_user, make_connection
    ):
        connection = make_connection(make_user(), expires_at=clock() + timedelta(minutes=2))

        resolved = await credentials.resolve(connection.id)

        assert resolved.access_token == "refreshed-1"
        assert token_clients["google"].refresh_calls == 1

    async def test_outlook_token_is_not_refreshed_on_resolve(
        self, credentials, token_clients, clock, make_user, make_connection
    ):
        connection = make_connection(make_user(), provider="outlook", expires_at=clock() + timedelta(minutes=2))

        resolved = await credentials.resolve(connection.id)

        assert resolved.access_token == "access-token"
        assert token_clients["outlook"].refresh_calls == 0

    async def test_inactive_connection_is_unavailable(self, credentials, make_user, make_connection):
        connection = make_connection(make_user(), is_active=False)
        with pytest.raises(ConnectionUnavailableError):
            await credentials.resolve(connection.id)


class TestRefresh:
    async def test_refreshed_credentials_are_stored_encrypted(
        self, credentials, db, make_user, make_connection
    ):
        connection = make_connection(make_user())

        refreshed = await credentials.refresh(connection.id)

        db.expire_all()
        stored = db.query(SyncConnection).filter(SyncConnection.id == connection.id).one()
        assert "refreshed-1" not in stored.credential_blob
        decrypted = credentials.decrypt_credentials(stored.credential_blob)
        assert decrypted.access_token == refreshed.access_token == "refreshed-1"
        # Google omits refresh_token on refresh; the old one is kept
        assert decrypted.refresh_token == "refresh-token"

    async def test_outlook_requires_reauth(self, credentials, make_user, make_connection):
        connection = make_connection(make_user(), provider="outlook")
        with pytest.raises(ReauthRequired):
            await credentials.refresh(connection.id)

    async def test_unexpected_failure_becomes_credential_error(
        self, credentials, token_clients, make_user, make_connection
    ):
        token_clients["google"].refresh_error = RuntimeError("boom")
        connection = make_connection(make_user())

        with pytest.raises(CredentialError):
            await credentials.refresh(connection.id)

    async def test_concurrent_refreshes_are_serialized(
        self, credentials, token_clients, make_user, make_connection
    ):
        connection = make_connection(make_user())

        results = await asyncio.gather(*(credentials.refresh(connection.id) for _ in range(3)))

        assert token_clients["google"].refresh_calls == 3
        assert sorted(r.access_token for r in results) == ["refreshed-1", "refreshed-2", "refreshed-3"]


class TestValidate:
    async def test_expired_token_is_invalid_without_provider_call(
        self, credentials, clock, make_user, make_connection
    ):
        connection = make_connection(make_user(), expires_at=clock() - timedelta(minutes=1))

        result = await credentials.validate(connection.id)

        assert result.valid is False
        assert result.error == "Token expired"

    async def test_provider_verdict_is_returned(self, credentials, token_clients, make_user, make_connection):
        token_clients["google"].validation = CredentialValidation(valid=False, error="Token rejected by Google")
        connection = make_connection(make_user())

        result = await credentials.validate(connection.id)

        assert result.valid is False
        assert result.error == "Token rejected by Google"

    async def test_validate_does_not_touch_connection(self, credentials, db, make_user, make_connection):
        connection = make_connection(make_user())
        blob_before = connection.credential_blob

        await credentials.validate(connection.id)

        db.expire_all()
        stored = db.query(SyncConnection).filter(SyncConnection.id == connection.id).one()
        assert stored.credential_blob == blob_before
        assert stored.is_active is True
        assert stored.last_sync_error is None
