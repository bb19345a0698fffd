"""Unit tests for auth/passwords.py -- argon2id hashing and verification."""

from auth.passwords import equalize_timing, hash_password, needs_rehash, verify_password

PASSWORD = "Str0ng!Passw0rd"


def test_hash_is_argon2id_and_salted() -> None:
    first = hash_password(PASSWORD)
    second = hash_password(PASSWORD)
    assert first.startswith("$argon2id$")
    assert first != second


def test_verify_correct_password() -> None:
    assert verify_password(PASSWORD, hash_password(PASSWORD)) is True


def test_verify_wrong_password() -> None:
    assert verify_password("Wr0ng!Passw0rd", hash_password(PASSWORD)) is False


def test_verify_none_hash_is_false() -> None:
    """OAuth-only accounts have no hash; verification must fail, not raise."""
    assert verify_password(PASSWORD, None) is False


def test_verify_garbage_hash_is_false() -> None:
    assert verify_password(PASSWORD, "not-a-hash") is False


def test_fresh_hash_does_not_need_rehash() -> None:
    assert needs_rehash(hash_password(PASSWORD)) is False


def test_equalize_timing_returns_none() -> None:
    assert equalize_timing(PASSWORD) is None
