from backend.app.security import hash_pin, hash_session_token, is_valid_pin_format, verify_pin


def test_session_token_is_hashed_with_prefix():
    h = hash_session_token("abc")
    assert h.startswith("sha256:")
    assert len(h) > 10


def test_pin_hash_roundtrip():
    h = hash_pin("123456")
    assert verify_pin("123456", h) is True
    assert verify_pin("654321", h) is False


def test_verify_pin_without_hash_is_false():
    assert verify_pin("123456", None) is False
    assert verify_pin("", "whatever") is False


def test_pin_format_requires_six_digits():
    assert is_valid_pin_format("012345") is True
    assert is_valid_pin_format("12345") is False
    assert is_valid_pin_format("1234567") is False
    assert is_valid_pin_format("12a456") is False
    assert is_valid_pin_format(None) is False
