"""
security/services.py -- Composition root for the security layer.

build_services() wires one CredentialStore, one CryptoPrimitives and one
SecurityEventLog into every manager. Callers (the CLI, an HTTP layer, tests)
hold the returned SecurityServices for the life of the process and call
close() on shutdown.

Usage:
    services = build_services()
    if services.rbac.has_permission(user_id, "project", "read", {"projectId": "123"}):
        ...
    services.close()
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from core.config import Settings, get_settings
from security.crypto import CryptoPrimitives
from security.events import SecurityEventLog
from security.mfa import MFAManager
from security.rbac import RBACEngine
from security.threats import ThreatDetector
from security.webauthn import WebAuthnManager
from store.kv import CredentialStore

logger = logging.getLogger("trustgate.services")


@dataclass
class SecurityServices:
    settings: Settings
    store: CredentialStore
    crypto: CryptoPrimitives
    events: SecurityEventLog
    mfa: MFAManager
    webauthn: WebAuthnManager
    rbac: RBACEngine
    threats: ThreatDetector

    def close(self) -> None:
        self.store.close()


def build_services(settings: Settings | None = None, store: CredentialStore | None = None) -> SecurityServices:
    """Construct every manager from settings (default: get_settings()).

    Pass store to share an existing CredentialStore, e.g. an in-memory one in
    tests. Otherwise one is opened on settings.database_url.
    """
    settings = settings or get_settings()
    store = store or CredentialStore(settings.database_url)
    crypto = CryptoPrimitives(settings.encryption_key, settings.secret_key, valid_window=settings.totp_valid_window)
    events = SecurityEventLog(store, crypto, retention=settings.security_event_retention)

    logger.debug("Security services ready (rp_id=%s)", settings.webauthn_rp_id)
    return SecurityServices(
        settings=settings,
        store=store,
        crypto=crypto,
        events=events,
        mfa=MFAManager(store, crypto, events, issuer=settings.totp_issuer),
        webauthn=WebAuthnManager(
            store,
            crypto,
            events,
            rp_id=settings.webauthn_rp_id,
            rp_name=settings.webauthn_rp_name,
            origins=settings.allowed_origins,
            timeout_ms=settings.webauthn_timeout_ms,
        ),
        rbac=RBACEngine(store, events),
        threats=ThreatDetector(store, events),
    )
