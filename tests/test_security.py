"""
PasswordHasher and TokenIssuer tests. Pure functions, no database.
"""
from datetime import timedelta

import jwt
import pytest

from app.exceptions import AuthenticationError
from app.security import PasswordHasher, TokenIssuer, TokenKind

hasher = PasswordHasher(iterations=1_000)


def _issuer(**kwargs) -> TokenIssuer:
    kwargs.setdefault("access_secret", "access-secret")
    kwargs.setdefault("refresh_secret", "refresh-secret")
    return TokenIssuer(**kwargs)


# ---------------------------------------------------------------------------
# PasswordHasher
# ---------------------------------------------------------------------------

def test_hash_is_salt_colon_key():
    stored = hasher.hash("correct horse")
    salt, _, key = stored.partition(":")
    assert len(bytes.fromhex(salt)) == 16
    assert len(bytes.fromhex(key)) == 32


def test_verify_accepts_original_password():
    stored = hasher.hash("correct horse")
    assert hasher.verify("correct horse", stored) is True


def test_verify_rejects_other_password():
    stored = hasher.hash("correct horse")
    assert hasher.verify("battery staple", stored) is False


def test_same_password_hashes_differently():
    """A fresh salt per call means equal passwords never share a stored hash."""
    assert hasher.hash("same") != hasher.hash("same")


@pytest.mark.parametrize("stored", ["", "no-separator", "zz:zz", "00:", ":00", "abcd:ef01"])
def test_verify_malformed_hash_is_false(stored):
    assert hasher.verify("anything", stored) is False


def test_hash_from_other_iteration_count_does_not_verify():
    stored = PasswordHasher(iterations=2_000).hash("pw")
    assert hasher.verify("pw", stored) is False


# ---------------------------------------------------------------------------
# TokenIssuer
# ---------------------------------------------------------------------------

def test_access_token_round_trip_carries_permission_snapshot():
    issuer = _issuer()
    token = issuer.issue_access(7, "a@example.com", "EDITOR", ["comment:moderate", "article:create"])
    payload = issuer.verify(token, TokenKind.ACCESS)
    assert payload.user_id == 7
    assert payload.kind is TokenKind.ACCESS
    assert payload.email == "a@example.com"
    assert payload.role == "EDITOR"
    assert payload.permissions == frozenset({"comment:moderate", "article:create"})
    assert payload.expires_at is not None


def test_refresh_token_verifies_as_refresh():
    issuer = _issuer()
    payload = issuer.verify(issuer.issue_refresh(3), TokenKind.REFRESH)
    assert payload.user_id == 3
    assert payload.permissions == frozenset()


def test_refresh_token_is_not_an_access_token():
    issuer = _issuer()
    with pytest.raises(AuthenticationError) as exc_info:
        issuer.verify(issuer.issue_refresh(3), TokenKind.ACCESS)
    assert exc_info.value.code == "INVALID_TOKEN"


def test_access_token_is_not_a_refresh_token():
    issuer = _issuer()
    token = issuer.issue_access(3, "a@example.com", "USER", [])
    with pytest.raises(AuthenticationError) as exc_info:
        issuer.verify(token, TokenKind.REFRESH)
    assert exc_info.value.code == "INVALID_TOKEN"


def test_type_claim_is_checked_even_with_matching_secret():
    """A token signed with the access secret but typed 'refresh' is rejected."""
    forged = jwt.encode(
        {"sub": "1", "type": "refresh", "exp": 4_102_444_800}, "access-secret", algorithm="HS256"
    )
    with pytest.raises(AuthenticationError):
        _issuer().verify(forged, TokenKind.ACCESS)


def test_expired_token_is_invalid():
    issuer = _issuer(access_ttl=timedelta(seconds=-5))
    token = issuer.issue_access(1, "a@example.com", "USER", [])
    with pytest.raises(AuthenticationError) as exc_info:
        issuer.verify(token, TokenKind.ACCESS)
    assert exc_info.value.code == "INVALID_TOKEN"


@pytest.mark.parametrize("token", ["", "not-a-jwt", "a.b.c"])
def test_garbage_token_is_invalid(token):
    with pytest.raises(AuthenticationError) as exc_info:
        _issuer().verify(token, TokenKind.ACCESS)
    assert exc_info.value.code == "INVALID_TOKEN"
    assert exc_info.value.message == "Invalid token"


def test_token_from_other_secret_is_invalid():
    token = _issuer(access_secret="other-secret").issue_access(1, "a@example.com", "USER", [])
    with pytest.raises(AuthenticationError):
        _issuer().verify(token, TokenKind.ACCESS)


def test_non_numeric_subject_is_invalid():
    token = jwt.encode(
        {"sub": "admin", "type": "access", "exp": 4_102_444_800}, "access-secret", algorithm="HS256"
    )
    with pytest.raises(AuthenticationError):
        _issuer().verify(token, TokenKind.ACCESS)


def test_identical_secrets_are_refused():
    with pytest.raises(ValueError):
        TokenIssuer(access_secret="same", refresh_secret="same")


def test_empty_secret_is_refused():
    with pytest.raises(ValueError):
        TokenIssuer(access_secret="", refresh_secret="refresh")
