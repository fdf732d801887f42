"""
tests/conftest.py -- Shared test fixtures for TrustGate.

This module provides:
  - FakeClock: a callable clock the store, crypto and detector all share, so
    tests move time forward (TTL expiry, TOTP steps, hour buckets) without
    sleeping
  - store / crypto / events: an in-memory CredentialStore, real crypto with
    throwaway keys, and the event log on top of them
  - mfa / webauthn / rbac / threats: the managers wired the way
    security.services.build_services() wires them
  - SoftAuthenticator: a software WebAuthn authenticator (P-256) that
    produces real clientDataJSON, authenticatorData, attestation objects and
    signatures with cryptography and fido2.cbor

Plain "sqlite:///:memory:" is enough here: nothing runs in a thread pool, and
SQLAlchemy keeps one connection per thread for in-memory SQLite so every
transaction sees the same database.

The DEBUG env var must be set before any core import so get_settings()
auto-generates keys in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import hashlib
import json
import os
import secrets
import struct
from collections.abc import Generator

# Set DEBUG before any core/security import so get_settings() can
# auto-generate SECRET_KEY and ENCRYPTION_KEY instead of raising.
os.environ.setdefault("DEBUG", "true")

import pytest
from cryptography.fernet import Fernet
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from fido2 import cbor
from fido2.webauthn import AuthenticatorData

from security.ceremony import b64url_encode
from security.crypto import CryptoPrimitives
from security.events import SecurityEventLog
from security.mfa import MFAManager
from security.rbac import RBACEngine
from security.threats import ThreatDetector
from security.webauthn import WebAuthnManager
from store.kv import CredentialStore

RP_ID = "localhost"
ORIGIN = "https://localhost"

FLAG_USER_PRESENT = AuthenticatorData.FLAG.UP
FLAG_ATTESTED_DATA = AuthenticatorData.FLAG.AT

# 2023-11-14 22:13:00 UTC, on a 30 s TOTP boundary.
START_TIME = 1_699_999_980.0


# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------


class FakeClock:
    """Callable stand-in for time.time()."""

    def __init__(self, now: float = START_TIME) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# ---------------------------------------------------------------------------
# Software authenticator
# ---------------------------------------------------------------------------


class SoftAuthenticator:
    """Minimal ES256 authenticator producing WebAuthn JSON responses.

    Usage:
        auth = SoftAuthenticator()
        response = auth.register(options)        # navigator.credentials.create()
        assertion = auth.authenticate(options)   # navigator.credentials.get()
    """

    def __init__(self, rp_id: str = RP_ID, origin: str = ORIGIN) -> None:
        self.rp_id = rp_id
        self.origin = origin
        self.private_key = ec.generate_private_key(ec.SECP256R1())
        self.credential_id = secrets.token_bytes(16)
        self.sign_count = 0

    @property
    def credential_id_b64(self) -> str:
        return b64url_encode(self.credential_id)

    def cose_key(self) -> dict:
        numbers = self.private_key.public_key().public_numbers()
        return {1: 2, 3: -7, -1: 1, -2: numbers.x.to_bytes(32, "big"), -3: numbers.y.to_bytes(32, "big")}

    def client_data(self, ceremony_type: str, challenge: str, origin: str | None = None) -> bytes:
        return json.dumps(
            {"type": ceremony_type, "challenge": challenge, "origin": origin or self.origin, "crossOrigin": False}
        ).encode("utf-8")

    def authenticator_data(self, flags: int, sign_count: int, attested: bool = False, rp_id: str | None = None) -> bytes:
        data = hashlib.sha256((rp_id or self.rp_id).encode("utf-8")).digest()
        data += bytes([flags]) + struct.pack(">I", sign_count)
        if attested:
            data += b"\x00" * 16 + struct.pack(">H", len(self.credential_id)) + self.credential_id
            data += cbor.encode(self.cose_key())
        return data

    def register(
        self,
        options: dict,
        *,
        origin: str | None = None,
        ceremony_type: str = "webauthn.create",
        flags: int = FLAG_USER_PRESENT | FLAG_ATTESTED_DATA,
        rp_id: str | None = None,
        fmt: str = "none",
    ) -> dict:
        client_data = self.client_data(ceremony_type, options["challenge"], origin)
        auth_data = self.authenticator_data(flags, self.sign_count, attested=True, rp_id=rp_id)
        attestation = cbor.encode({"fmt": fmt, "attStmt": {}, "authData": auth_data})
        return {
            "id": self.credential_id_b64,
            "rawId": self.credential_id_b64,
            "type": "public-key",
            "response": {
                "clientDataJSON": b64url_encode(client_data),
                "attestationObject": b64url_encode(attestation),
                "transports": ["usb"],
            },
        }

    def authenticate(
        self,
        options: dict,
        *,
        sign_count: int | None = None,
        origin: str | None = None,
        ceremony_type: str = "webauthn.get",
        flags: int = FLAG_USER_PRESENT,
        signer: ec.EllipticCurvePrivateKey | None = None,
        credential_id: str | None = None,
    ) -> dict:
        if sign_count is None:
            self.sign_count += 1
            sign_count = self.sign_count
        client_data = self.client_data(ceremony_type, options["challenge"], origin)
        auth_data = self.authenticator_data(flags, sign_count)
        signed = auth_data + hashlib.sha256(client_data).digest()
        signature = (signer or self.private_key).sign(signed, ec.ECDSA(hashes.SHA256()))
        cred = credential_id or self.credential_id_b64
        return {
            "id": cred,
            "rawId": cred,
            "type": "public-key",
            "response": {
                "clientDataJSON": b64url_encode(client_data),
                "authenticatorData": b64url_encode(auth_data),
                "signature": b64url_encode(signature),
                "userHandle": None,
            },
        }


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock) -> Generator[CredentialStore, None, None]:
    s = CredentialStore("sqlite:///:memory:", clock=clock)
    yield s
    s.close()


@pytest.fixture
def crypto(clock) -> CryptoPrimitives:
    return CryptoPrimitives(Fernet.generate_key().decode("ascii"), secrets.token_hex(32), clock=clock)


@pytest.fixture
def events(store, crypto) -> SecurityEventLog:
    return SecurityEventLog(store, crypto)


@pytest.fixture
def mfa(store, crypto, events) -> MFAManager:
    return MFAManager(store, crypto, events, issuer="TrustGate")


@pytest.fixture
def webauthn(store, crypto, events) -> WebAuthnManager:
    return WebAuthnManager(store, crypto, events, rp_id=RP_ID, rp_name="TrustGate", origins=[ORIGIN])


@pytest.fixture
def rbac(store, events) -> RBACEngine:
    return RBACEngine(store, events)


@pytest.fixture
def threats(store, events, clock) -> ThreatDetector:
    return ThreatDetector(store, events, clock=clock)


@pytest.fixture
def authenticator() -> SoftAuthenticator:
    return SoftAuthenticator()


@pytest.fixture
def make_authenticator():
    """Factory for additional authenticators (a second device, a cloned key)."""
    return SoftAuthenticator
