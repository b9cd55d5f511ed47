# aitools-auth Test Suite
"""
Test suite including:
- Unit tests (base32, HOTP/TOTP, backup codes, rate limiting)
- Integration tests (file store, audit trail, settings, CLI)
- Security tests (invalid inputs, double-spend, lockout, secrets at rest)

Run with: pytest
"""
