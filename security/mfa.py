"""
security/mfa.py -- TOTP enrollment, verification and backup codes.

State machine (hash user:{id}:mfa):

    Unconfigured --setup_totp--> PendingVerification --verify_and_enable_totp--> Enabled
                                  (secret stored, enabled=false)

setup_totp() always overwrites the whole record, so re-setup is the only way
back and never merges with what was there.

Record layout:
    secret          Fernet token of the base32 TOTP secret
    enabled         "true" | "false"
    setup_at        ISO 8601 UTC
    backup:{hmac}   Fernet token of one backup code, one field per code

Backup-code redemption [B1]: the submitted code is digested with the keyed
HMAC and the matching field is removed with a single HDEL. The store reports
how many fields that call removed, so two concurrent requests presenting the
same code cannot both succeed, and no stored code is ever decrypted to find a
match.

Constant shape [T1]: verify_totp() decrypts (a dummy token when there is no
secret), runs the full TOTP window and computes the backup digest before it
looks at whether the user is enrolled at all. A rejected code then costs the
same store calls either way: one HGETALL, one HDEL (against UNENROLLED_KEY
for users without MFA) and the mfa_rejected event write.
"""

from __future__ import annotations

import base64
import io
import logging
from datetime import datetime, timezone

import qrcode

from core.errors import SetupFailure
from security.crypto import CryptoPrimitives
from security.events import SecurityEventLog
from security.models import TotpSetup
from store.kv import CredentialStore

logger = logging.getLogger("trustgate.mfa")

BACKUP_CODE_COUNT = 10
BACKUP_PREFIX = "backup:"
UNENROLLED_KEY = "mfa:unenrolled"


def _mfa_key(user_id: str) -> str:
    return f"user:{user_id}:mfa"


def _normalize_backup_code(code: str) -> str:
    return (code or "").strip().replace(" ", "").replace("-", "").upper()


def _qr_data_url(uri: str) -> str:
    """Render uri as a PNG QR code and return it as a data: URL.

    The frontend can display this directly: <img src="{result}">
    """
    qr = qrcode.QRCode(
        version=1,
        error_correction=qrcode.constants.ERROR_CORRECT_L,
        box_size=10,
        border=4,
    )
    qr.add_data(uri)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")

    buffer = io.BytesIO()
    img.save(buffer, format="PNG")
    return "data:image/png;base64," + base64.b64encode(buffer.getvalue()).decode("ascii")


class MFAManager:
    def __init__(
        self,
        store: CredentialStore,
        crypto: CryptoPrimitives,
        events: SecurityEventLog,
        issuer: str = "TrustGate",
    ) -> None:
        self._store = store
        self._crypto = crypto
        self._events = events
        self.issuer = issuer

    def _new_backup_codes(self) -> tuple[list[str], dict[str, str]]:
        """Return (plaintext codes, hash fields) for a fresh batch of unique codes."""
        codes: list[str] = []
        while len(codes) < BACKUP_CODE_COUNT:
            code = self._crypto.new_backup_code()
            if code not in codes:
                codes.append(code)
        fields = {BACKUP_PREFIX + self._crypto.digest(code): self._crypto.encrypt(code) for code in codes}
        return codes, fields

    # ------------------------------------------------------------------
    # Enrollment
    # ------------------------------------------------------------------

    def setup_totp(self, user_id: str, email: str) -> TotpSetup:
        """Generate a secret and 10 backup codes and store them disabled.

        Everything is computed before the single hreplace() write, so a failure
        at any point leaves the previous record untouched. Raises SetupFailure.
        """
        try:
            secret = self._crypto.new_totp_secret()
            codes, backup_fields = self._new_backup_codes()
            qr_code_url = _qr_data_url(self._crypto.totp_uri(secret, email, self.issuer))
            record = {
                "secret": self._crypto.encrypt(secret),
                "enabled": "false",
                "setup_at": datetime.now(timezone.utc).isoformat(),
                **backup_fields,
            }
            self._store.hreplace(_mfa_key(user_id), record)
        except Exception as exc:
            logger.exception("MFA setup failed for user %s", user_id)
            raise SetupFailure("Failed to setup MFA") from exc

        self._events.emit(
            "mfa_challenge",
            "medium",
            {"action": "mfa_setup_initiated"},
            user_id=user_id,
            resolved=False,
        )
        return TotpSetup(secret=secret, qr_code_url=qr_code_url, backup_codes=codes)

    def verify_and_enable_totp(self, user_id: str, code: str) -> bool:
        """Flip PendingVerification -> Enabled on the first correct code.

        False if there is no pending secret, if MFA is already enabled, if the
        code is wrong, or on any internal failure.
        """
        key = _mfa_key(user_id)
        try:
            token, enabled = self._store.hmget(key, "secret", "enabled")
            if not token or enabled == "true":
                logger.info("Refusing to enable MFA for user %s: invalid setup state", user_id)
                return False
            secret = self._crypto.decrypt(token, key)
            if not self._crypto.verify_totp(secret, code):
                return False
            self._store.hset(key, {"enabled": "true"})
        except Exception:
            logger.exception("MFA enable failed for user %s", user_id)
            return False

        self._events.emit("mfa_challenge", "medium", {"action": "mfa_enabled"}, user_id=user_id)
        return True

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def verify_totp(self, user_id: str, code: str) -> bool:
        """Check a login code: live TOTP first, then a single-use backup code.

        Never raises. Always False while MFA is not enabled.
        """
        key = _mfa_key(user_id)
        try:
            record = self._store.hgetall(key)
            token = record.get("secret")
            enrolled = token is not None and record.get("enabled") == "true"

            # Same crypto work whether or not the user is enrolled [T1].
            secret = self._crypto.decrypt(token or self._crypto.dummy_token, key)
            totp_ok = self._crypto.verify_totp(secret, code)
            backup_field = BACKUP_PREFIX + self._crypto.digest(_normalize_backup_code(code))

            if enrolled and totp_ok:
                self._events.emit(
                    "mfa_challenge", "low", {"action": "mfa_verified", "method": "totp"}, user_id=user_id
                )
                return True

            # Compare-and-remove [B1]. Unenrolled users hit a hash that never
            # holds fields, so every rejection makes the same store calls [T1].
            redeemed = self._store.hdel(key if enrolled else UNENROLLED_KEY, backup_field) == 1
            if enrolled and redeemed:
                remaining = len(self._store.hkeys(key, BACKUP_PREFIX))
                self._events.emit(
                    "mfa_challenge",
                    "medium",
                    {"action": "mfa_verified", "method": "backup_code", "backup_codes_remaining": remaining},
                    user_id=user_id,
                )
                return True
        except Exception:
            logger.exception("MFA verification failed for user %s", user_id)
            return False

        self._events.emit(
            "mfa_challenge", "medium", {"action": "mfa_rejected"}, user_id=user_id, resolved=False
        )
        return False

    # ------------------------------------------------------------------
    # Backup codes
    # ------------------------------------------------------------------

    def generate_new_backup_codes(self, user_id: str) -> list[str]:
        """Replace every stored backup code with 10 new ones and return them.

        Caller-level authorization is the identity layer's job. Raises
        SetupFailure on store or crypto failure.
        """
        try:
            codes, fields = self._new_backup_codes()
            self._store.hreplace(_mfa_key(user_id), fields, prefix=BACKUP_PREFIX)
        except Exception as exc:
            logger.exception("Backup code generation failed for user %s", user_id)
            raise SetupFailure("Failed to generate backup codes") from exc

        self._events.emit("mfa_challenge", "medium", {"action": "backup_codes_regenerated"}, user_id=user_id)
        return codes

    def backup_codes_remaining(self, user_id: str) -> int:
        return len(self._store.hkeys(_mfa_key(user_id), BACKUP_PREFIX))

    def is_enabled(self, user_id: str) -> bool:
        """Fail-closed status check: False on any store error."""
        try:
            token, enabled = self._store.hmget(_mfa_key(user_id), "secret", "enabled")
        except Exception:
            logger.exception("MFA status lookup failed for user %s", user_id)
            return False
        return bool(token) and enabled == "true"
