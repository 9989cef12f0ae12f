"""Tests for one-time token generation, hashing and expiry."""

from datetime import datetime, timedelta, timezone

from pilotlog.service.tokens import (
    TOKEN_BYTES,
    generate_token,
    hash_token,
    is_token_expired,
    issue_token,
    token_expiry,
    verify_token,
)

NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


class TestGenerateToken:
    def test_token_is_64_hex_chars(self):
        token = generate_token()
        assert len(token) == TOKEN_BYTES * 2
        int(token, 16)

    def test_tokens_are_unique(self):
        assert len({generate_token() for _ in range(50)}) == 50


class TestHashToken:
    def test_hash_is_deterministic_sha256_hex(self):
        digest = hash_token("abc")
        assert digest == hash_token("abc")
        assert digest == "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"

    def test_hash_differs_from_secret(self):
        token = generate_token()
        assert hash_token(token) != token


class TestVerifyToken:
    def test_matching_token_verifies(self):
        token = generate_token()
        assert verify_token(token, hash_token(token)) is True

    def test_uppercase_digest_still_verifies(self):
        token = generate_token()
        assert verify_token(token, hash_token(token).upper()) is True

    def test_wrong_token_fails(self):
        token = generate_token()
        assert verify_token(generate_token(), hash_token(token)) is False

    def test_malformed_input_fails_without_raising(self):
        assert verify_token("", hash_token("x")) is False
        assert verify_token("x", "") is False
        assert verify_token("x", None) is False
        assert verify_token("x", "not-a-digest") is False


class TestExpiry:
    def test_token_expiry_offsets_from_now(self):
        assert token_expiry(days=7, now=NOW) == NOW + timedelta(days=7)
        assert token_expiry(minutes=60, now=NOW) == NOW + timedelta(hours=1)

    def test_expired_exactly_at_deadline(self):
        assert is_token_expired(NOW, NOW) is True
        assert is_token_expired(NOW + timedelta(seconds=1), NOW) is False
        assert is_token_expired(NOW - timedelta(seconds=1), NOW) is True

    def test_issue_token_stores_only_digest(self):
        issued = issue_token(timedelta(hours=24), now=NOW)
        assert issued.token_hash == hash_token(issued.token)
        assert issued.expires_at == NOW + timedelta(hours=24)
