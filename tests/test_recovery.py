"""Unit tests for recovery token issue, redemption and password reset."""

import pytest

from authcore.service.errors import TokenExpiredError, TokenNotFoundError, WeakPasswordError
from authcore.service.recovery import RecoveryTokenManager
from authcore.storage.errors import StoreError


@pytest.fixture
def recovery(memory_store, hasher, channel, clock):
    return RecoveryTokenManager(
        memory_store,
        memory_store,
        hasher,
        channel,
        token_length=32,
        token_ttl_minutes=30,
        cooldown_minutes=5,
        clock=clock,
    )


class TestRequest:
    def test_known_email_gets_alphanumeric_token(self, recovery, channel, create_identity):
        create_identity("alice")
        recovery.request("alice@example.com")
        assert len(channel.tokens) == 1
        token = channel.last_token
        assert len(token) == 32
        assert token.isalnum()

    def test_unknown_email_is_silent(self, recovery, channel):
        assert recovery.request("ghost@example.com") is None
        assert channel.tokens == []

    def test_disabled_identity_gets_nothing(self, recovery, channel, create_identity):
        create_identity("carl", enabled=False)
        recovery.request("carl@example.com")
        assert channel.tokens == []

    def test_malformed_email_is_silent(self, recovery, channel):
        assert recovery.request("not-an-email") is None
        assert channel.tokens == []

    def test_email_lookup_is_case_insensitive(self, recovery, channel, create_identity):
        create_identity("alice")
        recovery.request("ALICE@Example.com")
        assert len(channel.tokens) == 1

    def test_request_within_cooldown_is_suppressed(self, recovery, channel, create_identity, clock):
        create_identity("alice")
        recovery.request("alice@example.com")
        clock.advance(minutes=2)
        recovery.request("alice@example.com")
        assert len(channel.tokens) == 1

    def test_new_request_invalidates_previous_token(self, recovery, channel, create_identity, clock):
        create_identity("alice")
        recovery.request("alice@example.com")
        first = channel.last_token
        clock.advance(minutes=6)
        recovery.request("alice@example.com")
        second = channel.last_token
        assert first != second
        with pytest.raises(TokenNotFoundError):
            recovery.validate(first)
        assert recovery.validate(second) == "alice@example.com"


class TestRedeem:
    def test_validate_peeks_without_consuming(self, recovery, channel, create_identity):
        create_identity("alice")
        recovery.request("alice@example.com")
        token = channel.last_token
        assert recovery.validate(token) == "alice@example.com"
        assert recovery.validate(token) == "alice@example.com"

    def test_token_redeemable_once(self, recovery, channel, create_identity):
        create_identity("alice")
        recovery.request("alice@example.com")
        token = channel.last_token
        assert recovery.redeem(token) == "alice@example.com"
        with pytest.raises(TokenNotFoundError):
            recovery.redeem(token)

    def test_expired_token(self, recovery, channel, create_identity, clock):
        create_identity("alice")
        recovery.request("alice@example.com")
        token = channel.last_token
        clock.advance(minutes=30)
        with pytest.raises(TokenExpiredError):
            recovery.validate(token)
        with pytest.raises(TokenExpiredError):
            recovery.redeem(token)
        with pytest.raises(TokenNotFoundError):
            recovery.redeem(token)

    def test_unknown_token(self, recovery):
        with pytest.raises(TokenNotFoundError):
            recovery.validate("x" * 32)


class TestResetPassword:
    @pytest.mark.parametrize("weak", ["short1", "lettersonly", "1234567890", "a1" * 65])
    def test_weak_password_rejected_before_redeem(self, recovery, channel, create_identity, weak):
        create_identity("alice")
        recovery.request("alice@example.com")
        token = channel.last_token
        with pytest.raises(WeakPasswordError):
            recovery.reset_password(token, weak)
        assert recovery.validate(token) == "alice@example.com"

    def test_reset_stores_fresh_salt(self, recovery, channel, create_identity, memory_store, hasher):
        identity = create_identity("alice")
        before = memory_store.get_credential(identity.id)
        recovery.request("alice@example.com")
        recovery.reset_password(channel.last_token, "NewPass123")
        after = memory_store.get_credential(identity.id)
        assert after.password_salt != before.password_salt
        assert hasher.verify("NewPass123", after.password_hash, after.password_salt)
        assert not hasher.verify("Correct1pass", after.password_hash, after.password_salt)

    def test_reset_consumes_token(self, recovery, channel, create_identity):
        create_identity("alice")
        recovery.request("alice@example.com")
        token = channel.last_token
        recovery.reset_password(token, "NewPass123")
        with pytest.raises(TokenNotFoundError):
            recovery.reset_password(token, "OtherPass456")

    def test_failed_write_after_redeem_does_not_restore_token(
        self, recovery, channel, create_identity, memory_store
    ):
        identity = create_identity("alice")
        before = memory_store.get_credential(identity.id)
        recovery.request("alice@example.com")
        token = channel.last_token

        def _broken(credential):
            raise StoreError("backend down")

        memory_store.save_credential = _broken
        with pytest.raises(StoreError):
            recovery.reset_password(token, "NewPass123")
        with pytest.raises(TokenNotFoundError):
            recovery.validate(token)
        assert memory_store.get_credential(identity.id).password_hash == before.password_hash
