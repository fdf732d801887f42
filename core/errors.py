"""
core/errors.py -- Exception taxonomy shared by the store and security layers.

Verification paths (verify_totp, verify_authentication, has_permission, the
threat scorers) catch these and collapse to a deny / maximum-caution result.
Setup paths surface SetupFailure only, whose message carries no detail an
attacker could use to tell "unknown user" from "internal error".
"""


class TrustGateError(Exception):
    """Base class for every error raised by TrustGate."""


class StoreUnavailable(TrustGateError):
    """Raised when the credential store cannot complete a round trip."""

    def __init__(self, operation: str):
        self.operation = operation
        super().__init__(f"Credential store unavailable during {operation}")


class MalformedStoredData(TrustGateError):
    """Raised when a stored value cannot be decrypted or parsed."""

    def __init__(self, key: str, reason: str = "unreadable value"):
        self.key = key
        self.reason = reason
        super().__init__(f"Malformed data at {key}: {reason}")


class InvalidOrExpiredChallenge(TrustGateError):
    """Raised when a WebAuthn ceremony has no live challenge to consume."""

    def __init__(self, purpose: str):
        self.purpose = purpose
        super().__init__(f"No pending {purpose} challenge")


class CredentialMismatch(TrustGateError):
    """Raised when a WebAuthn response fails any verification step."""


class SetupFailure(TrustGateError):
    """Generic failure surfaced to callers of setup/registration operations."""

    def __init__(self, message: str = "Security setup failed"):
        super().__init__(message)
