"""
security/models.py -- Domain dataclasses for the trust and access control layer.

Pattern: Data class (pure data container, zero logic beyond (de)serialization).
Managers and the store do the work; these own the domain shape.

to_json()/from_json() exist only for entities persisted as JSON strings in
the credential store. from_json() raises MalformedStoredData on anything that
does not have the expected shape, so a corrupted record can never be mistaken
for a valid one.

Layer rule: no imports from store/.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from typing import Any

from core.errors import MalformedStoredData


def _load_object(raw: str, key: str) -> dict:
    try:
        data = json.loads(raw)
    except (TypeError, ValueError):
        raise MalformedStoredData(key, "invalid JSON") from None
    if not isinstance(data, dict):
        raise MalformedStoredData(key, "expected a JSON object")
    return data


def _require_str(data: dict, name: str, key: str) -> str:
    value = data.get(name)
    if not isinstance(value, str) or not value:
        raise MalformedStoredData(key, f"missing or invalid {name!r}")
    return value


def _str_list(data: dict, name: str, key: str) -> list[str]:
    value = data.get(name) or []
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise MalformedStoredData(key, f"{name!r} must be a list of strings")
    return value


# ---------------------------------------------------------------------------
# MFA
# ---------------------------------------------------------------------------


@dataclass
class TotpSetup:
    """Returned once by MFAManager.setup_totp(). Plaintext values are never stored."""

    secret: str  # base32, for manual entry into an authenticator app
    qr_code_url: str  # data:image/png;base64,... of the otpauth:// URI
    backup_codes: list[str]


# ---------------------------------------------------------------------------
# WebAuthn
# ---------------------------------------------------------------------------


@dataclass
class WebAuthnDevice:
    """A registered authenticator.

    credential_id and public_key are base64url (no padding). public_key is the
    CBOR-encoded COSE key exactly as the authenticator attested it.

    counter is the last signature counter accepted. An assertion whose counter
    is not strictly greater is treated as a cloned authenticator.
    """

    credential_id: str
    public_key: str
    counter: int = 0
    transports: list[str] = field(default_factory=list)
    device_name: str = "Unnamed device"
    registered_at: str = ""
    last_used_at: str | None = None

    def to_json(self) -> str:
        return json.dumps(asdict(self))

    @classmethod
    def from_json(cls, raw: str, key: str) -> WebAuthnDevice:
        data = _load_object(raw, key)
        counter = data.get("counter", 0)
        if not isinstance(counter, int) or isinstance(counter, bool) or counter < 0:
            raise MalformedStoredData(key, "counter must be a non-negative integer")
        return cls(
            credential_id=_require_str(data, "credential_id", key),
            public_key=_require_str(data, "public_key", key),
            counter=counter,
            transports=_str_list(data, "transports", key),
            device_name=data.get("device_name") or "Unnamed device",
            registered_at=data.get("registered_at") or "",
            last_used_at=data.get("last_used_at"),
        )


# ---------------------------------------------------------------------------
# RBAC
# ---------------------------------------------------------------------------


@dataclass
class Permission:
    """Grants action on resource. conditions narrow it to matching contexts.

    Every key in conditions must be present in the request context with an
    equal value (same type) for the permission to grant.
    """

    id: str
    resource: str
    action: str
    name: str = ""
    conditions: dict[str, Any] | None = None

    def to_json(self) -> str:
        return json.dumps(asdict(self))

    @classmethod
    def from_json(cls, raw: str, key: str) -> Permission:
        data = _load_object(raw, key)
        conditions = data.get("conditions")
        if conditions is not None and not isinstance(conditions, dict):
            raise MalformedStoredData(key, "conditions must be an object")
        return cls(
            id=_require_str(data, "id", key),
            resource=_require_str(data, "resource", key),
            action=_require_str(data, "action", key),
            name=data.get("name") or "",
            conditions=conditions,
        )


@dataclass
class Role:
    """A named bundle of permission ids.

    inherit_from lists parent role ids whose permissions this role also
    grants. Resolution is transitive and cycle-safe (see RBACEngine).
    """

    id: str
    name: str
    permissions: list[str] = field(default_factory=list)
    inherit_from: list[str] = field(default_factory=list)

    def to_json(self) -> str:
        return json.dumps(asdict(self))

    @classmethod
    def from_json(cls, raw: str, key: str) -> Role:
        data = _load_object(raw, key)
        return cls(
            id=_require_str(data, "id", key),
            name=data.get("name") or "",
            permissions=_str_list(data, "permissions", key),
            inherit_from=_str_list(data, "inherit_from", key),
        )


# ---------------------------------------------------------------------------
# Threat detection
# ---------------------------------------------------------------------------


@dataclass
class LoginSignals:
    """Counters gathered from the store for one login attempt.

    None for location_known / hour_typical means "no history yet", which
    contributes nothing.
    """

    attempts: int
    ip_flagged: bool
    user_agent_known: bool
    location_known: bool | None = None
    hour_typical: bool | None = None


@dataclass
class LoginAssessment:
    risk_score: int  # 0..100
    blocked: bool
    reasons: list[str] = field(default_factory=list)


@dataclass
class AnomalySignals:
    action_count: int  # occurrences of the action in the current hour
    historical_average: int  # mean hourly count over earlier hours, >= 1
    seconds_since_last: float | None = None  # None when never seen before
    distinct_resources: int = 0  # distinct resources touched today


@dataclass
class AnomalyAssessment:
    is_anomalous: bool
    confidence: float  # 0..1
    reasons: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Audit
# ---------------------------------------------------------------------------


@dataclass
class SecurityEvent:
    """One append-only audit record.

    type is the category ("login_attempt", "mfa_challenge",
    "permission_check", "anomaly_detected", "threat_detected",
    "activity_check"). details is the free-form payload.
    """

    id: str
    type: str
    severity: str  # "low" | "medium" | "high" | "critical"
    timestamp: str  # ISO 8601 UTC
    user_id: str | None = None
    ip_address: str = "internal"
    user_agent: str = "system"
    details: dict[str, Any] = field(default_factory=dict)
    resolved: bool = True

    def to_json(self) -> str:
        return json.dumps(asdict(self), default=str)

    @classmethod
    def from_json(cls, raw: str, key: str) -> SecurityEvent:
        data = _load_object(raw, key)
        return cls(
            id=_require_str(data, "id", key),
            type=_require_str(data, "type", key),
            severity=data.get("severity") or "low",
            timestamp=_require_str(data, "timestamp", key),
            user_id=data.get("user_id"),
            ip_address=data.get("ip_address") or "internal",
            user_agent=data.get("user_agent") or "system",
            details=data.get("details") or {},
            resolved=bool(data.get("resolved", True)),
        )
