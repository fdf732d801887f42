"""
security/crypto.py -- Cryptographic primitives used by every TrustGate manager.

Security design decisions:
  Randomness: secrets / uuid4 only. Backup codes are 4 random bytes rendered
       as 8 upper-case hex characters (32 bits each, single use, rate limited
       by the identity layer).

  TOTP: RFC 6238 via cryptography's TOTP (HMAC-SHA1, 6 digits, 30 s step).
       Secrets are 160 random bits, handed to users as unpadded base32.
       verify_totp() evaluates every step in the tolerance window and never
       short-circuits, so a wrong code and a right code cost the same.

  Encryption at rest: Fernet (AES-128-CBC + HMAC-SHA256, authenticated).
       A token that fails authentication raises MalformedStoredData, never
       returns garbage.

  Digests: HMAC-SHA256(SECRET_KEY, value). Deterministic, so a backup code
       can be located by digest in O(1) and removed with one atomic delete;
       keyed, so a leaked store does not reveal the codes.

  Timing equalization: dummy_token is a real ciphertext created at start-up.
       Callers decrypt it when a user has no secret so enrolled and
       unenrolled users cost the same amount of crypto work [T1].
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import secrets
import time
import uuid

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives.hashes import SHA1
from cryptography.hazmat.primitives.twofactor.totp import TOTP

from core.errors import MalformedStoredData

TOTP_DIGITS = 6
TOTP_STEP_SECONDS = 30
TOTP_SECRET_BYTES = 20
BACKUP_CODE_BYTES = 4


def _b32decode(secret: str) -> bytes:
    cleaned = secret.strip().replace(" ", "").upper()
    padding = "=" * (-len(cleaned) % 8)
    return base64.b32decode(cleaned + padding)


def _totp(secret: str) -> TOTP:
    return TOTP(_b32decode(secret), TOTP_DIGITS, SHA1(), TOTP_STEP_SECONDS)


class CryptoPrimitives:
    """Randomness, TOTP, authenticated encryption and keyed digests.

    Usage:
        crypto = CryptoPrimitives(settings.encryption_key, settings.secret_key)
        token = crypto.encrypt("JBSWY3DPEHPK3PXP")
        crypto.decrypt(token)   # "JBSWY3DPEHPK3PXP"
    """

    def __init__(self, encryption_key: str, hmac_key: str, valid_window: int = 1, clock=time.time) -> None:
        self._fernet = Fernet(encryption_key)
        self._hmac_key = hmac_key.encode("utf-8")
        self.valid_window = valid_window
        self._clock = clock
        self.dummy_token = self.encrypt(self.new_totp_secret())

    # ------------------------------------------------------------------
    # Randomness
    # ------------------------------------------------------------------

    def random_bytes(self, n: int = 32) -> bytes:
        return secrets.token_bytes(n)

    def new_uuid(self) -> str:
        return str(uuid.uuid4())

    def new_backup_code(self) -> str:
        return secrets.token_hex(BACKUP_CODE_BYTES).upper()

    def new_totp_secret(self) -> str:
        return base64.b32encode(secrets.token_bytes(TOTP_SECRET_BYTES)).decode("ascii").rstrip("=")

    # ------------------------------------------------------------------
    # TOTP
    # ------------------------------------------------------------------

    def totp_uri(self, secret: str, account_name: str, issuer: str) -> str:
        """Return the otpauth:// URI that authenticator apps scan."""
        return _totp(secret).get_provisioning_uri(account_name, issuer)

    def totp_code(self, secret: str, at: float | None = None) -> str:
        """Current code for secret. Used by tests and operator tooling only."""
        moment = self._clock() if at is None else at
        return _totp(secret).generate(int(moment)).decode("ascii")

    def verify_totp(self, secret: str, code: str) -> bool:
        """Return True if code matches any step in the tolerance window.

        Malformed codes still run the full window against a placeholder so
        the cost does not reveal why a code was rejected.
        """
        candidate = (code or "").strip().replace(" ", "").replace("-", "")
        well_formed = len(candidate) == TOTP_DIGITS and candidate.isdigit()
        submitted = candidate.encode("ascii") if well_formed else b"0" * TOTP_DIGITS

        totp = _totp(secret)
        now = int(self._clock())
        matched = False
        for offset in range(-self.valid_window, self.valid_window + 1):
            expected = totp.generate(now + offset * TOTP_STEP_SECONDS)
            matched |= hmac.compare_digest(expected, submitted)
        return well_formed and matched

    # ------------------------------------------------------------------
    # Encryption at rest
    # ------------------------------------------------------------------

    def encrypt(self, plaintext: str) -> str:
        return self._fernet.encrypt(plaintext.encode("utf-8")).decode("ascii")

    def decrypt(self, token: str, key: str = "ciphertext") -> str:
        """Decrypt a Fernet token. Raises MalformedStoredData on any failure."""
        try:
            return self._fernet.decrypt(token.encode("ascii")).decode("utf-8")
        except (InvalidToken, UnicodeError, AttributeError):
            raise MalformedStoredData(key, "ciphertext failed authentication") from None

    # ------------------------------------------------------------------
    # Keyed digests
    # ------------------------------------------------------------------

    def digest(self, value: str) -> str:
        """Return HMAC-SHA256(SECRET_KEY, value) as a hex string."""
        return hmac.new(self._hmac_key, value.encode("utf-8"), hashlib.sha256).hexdigest()
