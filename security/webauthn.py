"""
security/webauthn.py -- Passkey / security-key registration and authentication.

Challenge lifecycle [C1]:
    generate_*_options() stores a fresh 32-byte challenge under a per-user key
    with a 300 s TTL, replacing any earlier one. verify_*() consumes it with
    the store's atomic getdel() before looking at the response, so a challenge
    answers exactly one ceremony whether that ceremony succeeds or fails.

    webauthn:challenge:{user_id}        registration
    webauthn:auth_challenge:{user_id}   authentication

Devices (hash user:{user_id}:webauthn_devices):
    field = credential ID (base64url), value = WebAuthnDevice JSON

Clone detection [C2]: an assertion is accepted only when the authenticator's
counter is strictly greater than the stored one. The new counter is written
with a compare-and-set on the device record, so two assertions racing with
the same counter cannot both pass.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from core.errors import (
    CredentialMismatch,
    InvalidOrExpiredChallenge,
    MalformedStoredData,
    SetupFailure,
    StoreUnavailable,
)
from security import ceremony
from security.crypto import CryptoPrimitives
from security.events import SecurityEventLog
from security.models import WebAuthnDevice
from store.kv import CredentialStore

logger = logging.getLogger("trustgate.webauthn")

CHALLENGE_BYTES = 32
CHALLENGE_TTL_SECONDS = 300


def _registration_challenge_key(user_id: str) -> str:
    return f"webauthn:challenge:{user_id}"


def _authentication_challenge_key(user_id: str) -> str:
    return f"webauthn:auth_challenge:{user_id}"


def _devices_key(user_id: str) -> str:
    return f"user:{user_id}:webauthn_devices"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _descriptor(device: WebAuthnDevice) -> dict[str, Any]:
    descriptor: dict[str, Any] = {"type": "public-key", "id": device.credential_id}
    if device.transports:
        descriptor["transports"] = device.transports
    return descriptor


class WebAuthnManager:
    def __init__(
        self,
        store: CredentialStore,
        crypto: CryptoPrimitives,
        events: SecurityEventLog,
        rp_id: str,
        rp_name: str,
        origins: list[str],
        timeout_ms: int = 60000,
    ) -> None:
        self._store = store
        self._crypto = crypto
        self._events = events
        self.rp_id = rp_id
        self.rp_name = rp_name
        self.origins = list(origins)
        self.timeout_ms = timeout_ms
        self._server = ceremony.build_server(rp_id, rp_name, self.origins)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _issue_challenge(self, key: str) -> str:
        challenge = ceremony.b64url_encode(self._crypto.random_bytes(CHALLENGE_BYTES))
        self._store.set(key, challenge, ttl=CHALLENGE_TTL_SECONDS)
        return challenge

    def _consume_challenge(self, key: str, purpose: str) -> bytes:
        """Atomically take the pending challenge. Raises InvalidOrExpiredChallenge."""
        challenge = self._store.getdel(key)
        if challenge is None:
            raise InvalidOrExpiredChallenge(purpose)
        try:
            return ceremony.b64url_decode(challenge)
        except CredentialMismatch:
            raise InvalidOrExpiredChallenge(purpose) from None

    def _load_devices(self, user_id: str) -> list[WebAuthnDevice]:
        key = _devices_key(user_id)
        devices = []
        for credential_id, raw in sorted(self._store.hgetall(key).items()):
            try:
                devices.append(WebAuthnDevice.from_json(raw, f"{key}/{credential_id}"))
            except MalformedStoredData as exc:
                logger.warning("Skipping unreadable WebAuthn device: %s", exc)
        return devices

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def generate_registration_options(self, user_id: str, email: str) -> dict[str, Any]:
        """Return PublicKeyCredentialCreationOptions (JSON form) for user_id.

        Raises SetupFailure if the challenge cannot be stored.
        """
        try:
            existing = self._load_devices(user_id)
            challenge = self._issue_challenge(_registration_challenge_key(user_id))
        except StoreUnavailable as exc:
            logger.exception("WebAuthn registration options failed for user %s", user_id)
            raise SetupFailure("Failed to generate registration options") from exc

        return {
            "challenge": challenge,
            "rp": {"name": self.rp_name, "id": self.rp_id},
            "user": {
                "id": ceremony.b64url_encode(user_id.encode("utf-8")),
                "name": email,
                "displayName": email,
            },
            "pubKeyCredParams": [{"type": "public-key", "alg": alg} for alg in ceremony.SUPPORTED_ALGORITHMS],
            "timeout": self.timeout_ms,
            "attestation": "none",
            "excludeCredentials": [_descriptor(device) for device in existing],
            "authenticatorSelection": {
                "residentKey": "discouraged",
                "userVerification": "preferred",
            },
        }

    def verify_registration(self, user_id: str, response: dict[str, Any], device_name: str | None = None) -> bool:
        """Verify an attestation and store the new device.

        False when there is no pending challenge, when any verification step
        fails, or when the credential ID is already registered. Raises
        SetupFailure only when the store is unavailable.
        """
        try:
            try:
                challenge = self._consume_challenge(_registration_challenge_key(user_id), "registration")
            except InvalidOrExpiredChallenge as exc:
                logger.info("WebAuthn registration for user %s: %s", user_id, exc)
                return False

            try:
                verified = ceremony.verify_registration_response(
                    self._server, response, expected_challenge=challenge
                )
            except CredentialMismatch as exc:
                logger.info("WebAuthn registration rejected for user %s: %s", user_id, exc)
                self._events.emit(
                    "mfa_challenge",
                    "medium",
                    {"action": "webauthn_registration_rejected"},
                    user_id=user_id,
                    resolved=False,
                )
                return False

            transports = response["response"].get("transports")
            if not isinstance(transports, list):
                transports = []
            device = WebAuthnDevice(
                credential_id=ceremony.b64url_encode(verified.credential_id),
                public_key=ceremony.b64url_encode(verified.public_key),
                counter=verified.sign_count,
                transports=[t for t in transports if isinstance(t, str)],
                device_name=device_name or "Unnamed device",
                registered_at=_now(),
            )
            if not self._store.hsetnx(_devices_key(user_id), device.credential_id, device.to_json()):
                logger.warning("WebAuthn credential already registered for user %s", user_id)
                return False
        except StoreUnavailable as exc:
            logger.exception("WebAuthn registration failed for user %s", user_id)
            raise SetupFailure("Failed to verify registration") from exc
        except Exception:
            logger.exception("WebAuthn registration failed for user %s", user_id)
            return False

        self._events.emit(
            "mfa_challenge",
            "medium",
            {"action": "webauthn_registered", "device_name": device.device_name},
            user_id=user_id,
        )
        return True

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    def generate_authentication_options(self, user_id: str) -> dict[str, Any]:
        """Return PublicKeyCredentialRequestOptions (JSON form) for user_id.

        Raises SetupFailure if the challenge cannot be stored.
        """
        try:
            devices = self._load_devices(user_id)
            challenge = self._issue_challenge(_authentication_challenge_key(user_id))
        except StoreUnavailable as exc:
            logger.exception("WebAuthn authentication options failed for user %s", user_id)
            raise SetupFailure("Failed to generate authentication options") from exc

        return {
            "challenge": challenge,
            "rpId": self.rp_id,
            "allowCredentials": [_descriptor(device) for device in devices],
            "timeout": self.timeout_ms,
            "userVerification": "preferred",
        }

    def verify_authentication(self, user_id: str, response: dict[str, Any]) -> bool:
        """Verify an assertion from one of user_id's registered devices. Never raises."""
        try:
            challenge = self._consume_challenge(_authentication_challenge_key(user_id), "authentication")

            if not isinstance(response, dict):
                raise CredentialMismatch("malformed credential response")
            credential_id = ceremony.normalize_credential_id(response.get("rawId") or response.get("id"))
            key = _devices_key(user_id)
            raw = self._store.hget(key, credential_id)
            if raw is None:
                raise CredentialMismatch("credential is not registered to this user")
            device = WebAuthnDevice.from_json(raw, f"{key}/{credential_id}")

            new_counter = ceremony.verify_authentication_response(
                self._server,
                response,
                expected_challenge=challenge,
                public_key=ceremony.b64url_decode(device.public_key),
            )
            if new_counter <= device.counter:
                raise CredentialMismatch(
                    f"counter did not advance ({new_counter} <= {device.counter}), possible cloned authenticator"
                )

            device.counter = new_counter
            device.last_used_at = _now()
            if not self._store.hcompare_and_set(key, credential_id, raw, device.to_json()):
                raise CredentialMismatch("device record changed during verification")
        except InvalidOrExpiredChallenge as exc:
            logger.info("WebAuthn authentication for user %s: %s", user_id, exc)
            return False
        except CredentialMismatch as exc:
            logger.info("WebAuthn authentication rejected for user %s: %s", user_id, exc)
            self._events.emit(
                "mfa_challenge",
                "high",
                {"action": "webauthn_rejected", "reason": str(exc)},
                user_id=user_id,
                resolved=False,
            )
            return False
        except Exception:
            logger.exception("WebAuthn authentication failed for user %s", user_id)
            return False

        self._events.emit(
            "mfa_challenge",
            "low",
            {"action": "webauthn_verified", "device_name": device.device_name},
            user_id=user_id,
        )
        return True

    # ------------------------------------------------------------------
    # Device management
    # ------------------------------------------------------------------

    def list_devices(self, user_id: str) -> list[WebAuthnDevice]:
        return self._load_devices(user_id)

    def remove_device(self, user_id: str, credential_id: str) -> bool:
        """Delete one device. Returns False when the user has no such credential."""
        try:
            normalized = ceremony.normalize_credential_id(credential_id)
        except CredentialMismatch:
            return False
        removed = self._store.hdel(_devices_key(user_id), normalized) == 1
        if removed:
            self._events.emit(
                "mfa_challenge", "medium", {"action": "webauthn_device_removed"}, user_id=user_id
            )
        return removed
