"""Tests for credential issuance and the rotation engine."""

import asyncio
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, patch

import pytest

from tests.conftest import OTHER_ORIGIN, TEST_ORIGIN, TEST_OWNER
from tokenauth.services.errors import (
    ErrorKind,
    InvalidIdentifierError,
    InvalidInputError,
    InvalidOriginError,
    RecordExpiredError,
    RecordNotFoundError,
    RecordRevokedError,
    SecretMismatchError,
    SignatureInvalidError,
    SigningError,
    StorageError,
)
from tokenauth.services.notifier import drain_notifications
from tokenauth.services.rotation import RotationEngine, TokenPair, validate_owner_id
from tokenauth.services.token_store import InMemoryTokenStore


def _later(hours: int = 2):
    return lambda: datetime.now(UTC) + timedelta(hours=hours)


class FailingRevokeStore(InMemoryTokenStore):
    """In-memory store whose revoke() always fails."""

    async def revoke(self, bind_key: str) -> None:
        raise StorageError("connection lost")


class TestOwnerIdValidation:
    @pytest.mark.parametrize("owner_id", ["user-42", "d952af16-4251-4ab8-818f-3f3aca064256", "a@b.c"])
    def test_valid(self, owner_id):
        assert validate_owner_id(owner_id) == owner_id

    @pytest.mark.parametrize("owner_id", ["", None, "has space", "x" * 256, "semi;colon"])
    def test_invalid(self, owner_id):
        with pytest.raises(InvalidIdentifierError):
            validate_owner_id(owner_id)


class TestIssue:
    """Tests for the issuance entry point."""

    async def test_issue_returns_bound_pair(self, rotation_engine, codec, memory_store):
        pair = await rotation_engine.issue(TEST_OWNER, TEST_ORIGIN)

        claims = codec.verify_access_token(pair.access_token)
        assert claims.owner_id == TEST_OWNER
        assert claims.origin == TEST_ORIGIN

        record = await memory_store.get(claims.bind_key)
        assert record.owner_id == TEST_OWNER
        assert record.is_revoked is False
        assert record.expires_at - record.created_at == timedelta(seconds=3600)

    async def test_stored_hash_is_not_the_secret(self, rotation_engine, codec, memory_store):
        pair = await rotation_engine.issue(TEST_OWNER, TEST_ORIGIN)
        record = await memory_store.get(codec.verify_access_token(pair.access_token).bind_key)

        assert record.secret_hash != pair.refresh_token
        assert pair.refresh_token not in record.secret_hash
        codec.verify_refresh_secret(pair.refresh_token, record.secret_hash)

    async def test_invalid_owner(self, rotation_engine, memory_store):
        with pytest.raises(InvalidIdentifierError):
            await rotation_engine.issue("bad owner", TEST_ORIGIN)
        assert len(memory_store) == 0

    async def test_missing_origin(self, rotation_engine):
        with pytest.raises(InvalidOriginError):
            await rotation_engine.issue(TEST_OWNER, "")

    async def test_signing_failure_revokes_new_record(self, rotation_engine, codec, memory_store):
        """Test that a record whose access token could not be signed is not left usable."""
        with patch.object(codec, "sign_access_token", side_effect=SigningError()):
            with pytest.raises(SigningError):
                await rotation_engine.issue(TEST_OWNER, TEST_ORIGIN)

        assert len(memory_store) == 1
        (record,) = memory_store._records.values()
        assert record.is_revoked is True

    async def test_signing_failure_reported_even_if_revoke_fails(self, codec, notifier):
        engine = RotationEngine(codec, FailingRevokeStore(), notifier)
        with patch.object(codec, "sign_access_token", side_effect=SigningError()):
            with pytest.raises(SigningError):
                await engine.issue(TEST_OWNER, TEST_ORIGIN)

    async def test_storage_failure_propagates(self, codec, notifier):
        store = InMemoryTokenStore()
        store.create = AsyncMock(side_effect=StorageError())
        engine = RotationEngine(codec, store, notifier)

        with pytest.raises(StorageError):
            await engine.issue(TEST_OWNER, TEST_ORIGIN)


class TestRotate:
    """Tests for the rotation state machine."""

    async def test_round_trip(self, rotation_engine, codec):
        first = await rotation_engine.issue(TEST_OWNER, TEST_ORIGIN)
        second = await rotation_engine.rotate(first.access_token, first.refresh_token, TEST_ORIGIN)

        old_claims = codec.verify_access_token(first.access_token)
        new_claims = codec.verify_access_token(second.access_token)
        assert isinstance(second, TokenPair)
        assert new_claims.bind_key != old_claims.bind_key
        assert new_claims.owner_id == TEST_OWNER
        assert second.refresh_token != first.refresh_token

    async def test_old_record_revoked_after_rotation(self, rotation_engine, codec, memory_store):
        first = await rotation_engine.issue(TEST_OWNER, TEST_ORIGIN)
        second = await rotation_engine.rotate(first.access_token, first.refresh_token, TEST_ORIGIN)

        old = await memory_store.get(codec.verify_access_token(first.access_token).bind_key)
        new = await memory_store.get(codec.verify_access_token(second.access_token).bind_key)
        assert old.is_revoked is True
        assert new.is_revoked is False

    async def test_reuse_of_rotated_pair(self, rotation_engine):
        first = await rotation_engine.issue(TEST_OWNER, TEST_ORIGIN)
        await rotation_engine.rotate(first.access_token, first.refresh_token, TEST_ORIGIN)

        with pytest.raises(RecordRevokedError):
            await rotation_engine.rotate(first.access_token, first.refresh_token, TEST_ORIGIN)

    async def test_new_access_token_carries_current_origin(self, rotation_engine, codec):
        first = await rotation_engine.issue(TEST_OWNER, TEST_ORIGIN)
        second = await rotation_engine.rotate(first.access_token, first.refresh_token, OTHER_ORIGIN)

        assert codec.verify_access_token(second.access_token).origin == OTHER_ORIGIN

    async def test_expired_access_token_accepted(self, rotation_engine, codec, memory_store):
        """Test that an access token that has just expired can still be rotated."""
        first = await rotation_engine.issue(TEST_OWNER, TEST_ORIGIN)
        bind_key = codec.verify_access_token(first.access_token).bind_key
        expired_access = codec.sign_access_token(
            TEST_OWNER, TEST_ORIGIN, bind_key, ttl=timedelta(seconds=-60)
        )

        second = await rotation_engine.rotate(expired_access, first.refresh_token, TEST_ORIGIN)
        assert codec.verify_access_token(second.access_token).bind_key != bind_key

    @pytest.mark.parametrize(
        "access,refresh,message",
        [
            ("", "secret", "Access token is empty"),
            ("token", "", "Refresh token is empty"),
        ],
    )
    async def test_empty_input(self, rotation_engine, access, refresh, message):
        with pytest.raises(InvalidInputError) as exc_info:
            await rotation_engine.rotate(access, refresh, TEST_ORIGIN)
        assert exc_info.value.message == message

    async def test_missing_origin(self, rotation_engine):
        with pytest.raises(InvalidOriginError):
            await rotation_engine.rotate("token", "secret", "")

    async def test_invalid_access_token(self, rotation_engine, notifier):
        pair = await rotation_engine.issue(TEST_OWNER, TEST_ORIGIN)

        with pytest.raises(SignatureInvalidError):
            await rotation_engine.rotate(pair.access_token + "x", pair.refresh_token, OTHER_ORIGIN)
        notifier.notify.assert_not_called()

    async def test_unknown_bind_key(self, rotation_engine, codec):
        access = codec.sign_access_token(TEST_OWNER, TEST_ORIGIN, "no-such-key")
        with pytest.raises(RecordNotFoundError) as exc_info:
            await rotation_engine.rotate(access, "secret", TEST_ORIGIN)
        assert exc_info.value.message == "Refresh token does not exist"

    async def test_wrong_secret(self, rotation_engine, memory_store, codec):
        pair = await rotation_engine.issue(TEST_OWNER, TEST_ORIGIN)

        with pytest.raises(SecretMismatchError):
            await rotation_engine.rotate(pair.access_token, "wrong-secret", TEST_ORIGIN)

        record = await memory_store.get(codec.verify_access_token(pair.access_token).bind_key)
        assert record.is_revoked is False

    async def test_secret_of_another_pair(self, rotation_engine):
        first = await rotation_engine.issue(TEST_OWNER, TEST_ORIGIN)
        second = await rotation_engine.issue(TEST_OWNER, TEST_ORIGIN)

        with pytest.raises(SecretMismatchError):
            await rotation_engine.rotate(first.access_token, second.refresh_token, TEST_ORIGIN)

    async def test_expired_record(self, codec, memory_store, notifier):
        """Test that an expired, unrevoked record fails and is left revoked."""
        issuer = RotationEngine(codec, memory_store, notifier)
        pair = await issuer.issue(TEST_OWNER, TEST_ORIGIN)
        bind_key = codec.verify_access_token(pair.access_token).bind_key

        later = RotationEngine(codec, memory_store, notifier, clock=_later())
        with pytest.raises(RecordExpiredError) as exc_info:
            await later.rotate(pair.access_token, pair.refresh_token, TEST_ORIGIN)

        assert exc_info.value.kind == ErrorKind.RECORD_EXPIRED
        assert (await memory_store.get(bind_key)).is_revoked is True
        assert len(memory_store) == 1

    async def test_expired_record_reported_even_if_revoke_fails(self, codec, notifier):
        store = FailingRevokeStore()
        pair = await RotationEngine(codec, store, notifier).issue(TEST_OWNER, TEST_ORIGIN)

        later = RotationEngine(codec, store, notifier, clock=_later())
        with pytest.raises(RecordExpiredError):
            await later.rotate(pair.access_token, pair.refresh_token, TEST_ORIGIN)

    async def test_revoked_beats_expired(self, codec, memory_store, notifier):
        issuer = RotationEngine(codec, memory_store, notifier)
        pair = await issuer.issue(TEST_OWNER, TEST_ORIGIN)
        await memory_store.revoke(codec.verify_access_token(pair.access_token).bind_key)

        later = RotationEngine(codec, memory_store, notifier, clock=_later())
        with pytest.raises(RecordRevokedError):
            await later.rotate(pair.access_token, pair.refresh_token, TEST_ORIGIN)

    async def test_secret_checked_before_revoked_and_expired(self, codec, memory_store, notifier):
        """Test that a wrong secret never reveals the record's revoked/expired state."""
        issuer = RotationEngine(codec, memory_store, notifier)
        pair = await issuer.issue(TEST_OWNER, TEST_ORIGIN)
        await memory_store.revoke(codec.verify_access_token(pair.access_token).bind_key)

        later = RotationEngine(codec, memory_store, notifier, clock=_later())
        with pytest.raises(SecretMismatchError):
            await later.rotate(pair.access_token, "wrong-secret", TEST_ORIGIN)

    async def test_access_token_for_other_owner(self, rotation_engine, codec):
        pair = await rotation_engine.issue(TEST_OWNER, TEST_ORIGIN)
        bind_key = codec.verify_access_token(pair.access_token).bind_key
        forged = codec.sign_access_token("someone-else", TEST_ORIGIN, bind_key)

        with pytest.raises(SignatureInvalidError):
            await rotation_engine.rotate(forged, pair.refresh_token, TEST_ORIGIN)

    async def test_failed_revoke_of_old_record_keeps_rotation(self, codec, notifier):
        """Test that the new pair is returned even if the old record cannot be revoked."""
        store = FailingRevokeStore()
        engine = RotationEngine(codec, store, notifier)
        first = await engine.issue(TEST_OWNER, TEST_ORIGIN)

        second = await engine.rotate(first.access_token, first.refresh_token, TEST_ORIGIN)

        assert codec.verify_access_token(second.access_token).owner_id == TEST_OWNER
        assert len(store) == 2
        assert all(not record.is_revoked for record in store._records.values())

    async def test_signing_failure_during_rotation(self, rotation_engine, codec, memory_store):
        """Test that the old record stays usable when the new pair cannot be minted."""
        first = await rotation_engine.issue(TEST_OWNER, TEST_ORIGIN)
        old_key = codec.verify_access_token(first.access_token).bind_key

        with patch.object(codec, "sign_access_token", side_effect=SigningError()):
            with pytest.raises(SigningError):
                await rotation_engine.rotate(first.access_token, first.refresh_token, TEST_ORIGIN)

        assert (await memory_store.get(old_key)).is_revoked is False
        new_records = [r for r in memory_store._records.values() if r.bind_key != old_key]
        assert len(new_records) == 1
        assert new_records[0].is_revoked is True

    async def test_storage_failure_on_lookup(self, rotation_engine, codec, memory_store):
        pair = await rotation_engine.issue(TEST_OWNER, TEST_ORIGIN)
        memory_store.get = AsyncMock(side_effect=StorageError())

        with pytest.raises(StorageError):
            await rotation_engine.rotate(pair.access_token, pair.refresh_token, TEST_ORIGIN)


class TestOriginNotification:
    """Tests for origin-change notifications during rotation."""

    async def test_same_origin_no_notification(self, rotation_engine, notifier):
        pair = await rotation_engine.issue(TEST_OWNER, TEST_ORIGIN)
        await rotation_engine.rotate(pair.access_token, pair.refresh_token, TEST_ORIGIN)
        await drain_notifications()

        notifier.notify.assert_not_called()

    async def test_changed_origin_notifies_once(self, rotation_engine, notifier):
        pair = await rotation_engine.issue(TEST_OWNER, TEST_ORIGIN)
        await rotation_engine.rotate(pair.access_token, pair.refresh_token, OTHER_ORIGIN)
        await drain_notifications()

        notifier.notify.assert_called_once_with(TEST_OWNER, OTHER_ORIGIN)
        notifier.notify.assert_awaited_once()

    async def test_recipient_template(self, codec, memory_store, notifier):
        engine = RotationEngine(
            codec, memory_store, notifier, recipient_template="{owner_id}@example.com"
        )
        pair = await engine.issue(TEST_OWNER, TEST_ORIGIN)
        await engine.rotate(pair.access_token, pair.refresh_token, OTHER_ORIGIN)
        await drain_notifications()

        notifier.notify.assert_called_once_with(f"{TEST_OWNER}@example.com", OTHER_ORIGIN)

    async def test_notification_failure_does_not_fail_rotation(self, rotation_engine, notifier):
        notifier.notify.side_effect = RuntimeError("smtp down")
        pair = await rotation_engine.issue(TEST_OWNER, TEST_ORIGIN)

        new_pair = await rotation_engine.rotate(pair.access_token, pair.refresh_token, OTHER_ORIGIN)
        await drain_notifications()

        assert new_pair.refresh_token
        notifier.notify.assert_called_once()

    @pytest.mark.parametrize("template", ["{user}@example.com", "{0}", "{owner_id"])
    async def test_bad_recipient_template_does_not_fail_rotation(
        self, codec, memory_store, notifier, template
    ):
        engine = RotationEngine(codec, memory_store, notifier, recipient_template=template)
        pair = await engine.issue(TEST_OWNER, TEST_ORIGIN)

        new_pair = await engine.rotate(pair.access_token, pair.refresh_token, OTHER_ORIGIN)
        await drain_notifications()

        assert codec.verify_access_token(new_pair.access_token).origin == OTHER_ORIGIN
        notifier.notify.assert_not_called()

    async def test_slow_notifier_does_not_delay_rotation(self, rotation_engine, notifier):
        """Test that rotate() returns while delivery is still pending."""
        release = asyncio.Event()
        delivered = []

        async def notify(recipient, origin):
            await release.wait()
            delivered.append((recipient, origin))

        notifier.notify = AsyncMock(side_effect=notify)
        pair = await rotation_engine.issue(TEST_OWNER, TEST_ORIGIN)

        new_pair = await rotation_engine.rotate(pair.access_token, pair.refresh_token, OTHER_ORIGIN)

        assert new_pair.refresh_token
        assert not release.is_set()
        assert delivered == []
        notifier.notify.assert_called_once_with(TEST_OWNER, OTHER_ORIGIN)

        release.set()
        await drain_notifications()
        assert delivered == [(TEST_OWNER, OTHER_ORIGIN)]

    async def test_notification_sent_even_when_rotation_fails(self, rotation_engine, notifier):
        """Test that the alert goes out before the refresh secret is checked."""
        pair = await rotation_engine.issue(TEST_OWNER, TEST_ORIGIN)

        with pytest.raises(SecretMismatchError):
            await rotation_engine.rotate(pair.access_token, "wrong-secret", OTHER_ORIGIN)
        await drain_notifications()

        notifier.notify.assert_called_once_with(TEST_OWNER, OTHER_ORIGIN)


class TestRevoke:
    """Tests for explicit revocation (logout)."""

    async def test_revoke_pair(self, rotation_engine, codec, memory_store):
        pair = await rotation_engine.issue(TEST_OWNER, TEST_ORIGIN)
        await rotation_engine.revoke(pair.access_token, pair.refresh_token)

        record = await memory_store.get(codec.verify_access_token(pair.access_token).bind_key)
        assert record.is_revoked is True

        with pytest.raises(RecordRevokedError):
            await rotation_engine.rotate(pair.access_token, pair.refresh_token, TEST_ORIGIN)

    async def test_revoke_twice(self, rotation_engine):
        pair = await rotation_engine.issue(TEST_OWNER, TEST_ORIGIN)
        await rotation_engine.revoke(pair.access_token, pair.refresh_token)
        await rotation_engine.revoke(pair.access_token, pair.refresh_token)

    async def test_revoke_requires_secret(self, rotation_engine, codec, memory_store):
        pair = await rotation_engine.issue(TEST_OWNER, TEST_ORIGIN)

        with pytest.raises(SecretMismatchError):
            await rotation_engine.revoke(pair.access_token, "wrong-secret")
        record = await memory_store.get(codec.verify_access_token(pair.access_token).bind_key)
        assert record.is_revoked is False

    async def test_revoke_empty_input(self, rotation_engine):
        with pytest.raises(InvalidInputError):
            await rotation_engine.revoke("", "secret")


class TestConcreteScenario:
    async def test_issue_rotate_reuse_rotate_from_new_origin(self, rotation_engine, notifier):
        a1_r1 = await rotation_engine.issue("user-42", "10.0.0.1")

        a2_r2 = await rotation_engine.rotate(a1_r1.access_token, a1_r1.refresh_token, "10.0.0.1")
        await drain_notifications()
        notifier.notify.assert_not_called()

        with pytest.raises(RecordRevokedError):
            await rotation_engine.rotate(a1_r1.access_token, a1_r1.refresh_token, "10.0.0.1")

        a3_r3 = await rotation_engine.rotate(a2_r2.access_token, a2_r2.refresh_token, "10.0.0.2")
        await drain_notifications()

        assert a3_r3.access_token not in (a1_r1.access_token, a2_r2.access_token)
        notifier.notify.assert_called_once_with("user-42", "10.0.0.2")
