"""TOTP and recovery-code helpers."""

from tenantguard.service import mfa

# RFC 6238 appendix B secret ("12345678901234567890"), SHA1, truncated to 6 digits
RFC_SECRET = "GEZDGNBVGY3TQOJQGEZDGNBVGY3TQOJQ"


def test_generate_totp_matches_rfc_vectors():
    assert mfa.generate_totp(RFC_SECRET, 59) == "287082"
    assert mfa.generate_totp(RFC_SECRET, 1111111109) == "081804"
    assert mfa.generate_totp(RFC_SECRET, 1234567890) == "005924"


def test_verify_totp_allows_one_step_of_drift():
    now = 1_700_000_000
    previous = mfa.generate_totp(RFC_SECRET, now - 30)
    following = mfa.generate_totp(RFC_SECRET, now + 30)
    stale = mfa.generate_totp(RFC_SECRET, now - 90)

    assert mfa.verify_totp(RFC_SECRET, previous, now=now)
    assert mfa.verify_totp(RFC_SECRET, following, now=now)
    assert not mfa.verify_totp(RFC_SECRET, stale, now=now)


def test_verify_totp_rejects_malformed_codes():
    assert not mfa.verify_totp(RFC_SECRET, "")
    assert not mfa.verify_totp(RFC_SECRET, "12345")
    assert not mfa.verify_totp(RFC_SECRET, "abcdef")


def test_invalid_secret_never_verifies():
    assert mfa.generate_totp("not base32!", 59) == ""
    assert not mfa.verify_totp("not base32!", "000000")


def test_generated_secret_is_160_bits():
    secret = mfa.generate_secret()
    assert len(secret) == 32
    assert mfa.generate_totp(secret, 0).isdigit()


def test_recovery_codes_are_unique_uppercase_hex():
    codes = mfa.generate_recovery_codes()
    assert len(codes) == 10
    assert len(set(codes)) == 10
    for code in codes:
        assert len(code) == 8
        assert code == code.upper()
        int(code, 16)


def test_normalize_recovery_code():
    assert mfa.normalize_recovery_code("  ab12cd34 ") == "AB12CD34"
    assert mfa.normalize_recovery_code(None) == ""


def test_otpauth_uri_contains_issuer_and_secret():
    uri = mfa.otpauth_uri("ABC", "casey@example.com", "TenantGuard")
    assert uri.startswith("otpauth://totp/TenantGuard%3Acasey%40example.com?")
    assert "secret=ABC" in uri
    assert "issuer=TenantGuard" in uri
