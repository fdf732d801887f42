"""
security/ceremony.py -- WebAuthn response verification on top of fido2.

No store, no events. WebAuthnManager owns challenges and devices; this module
only answers "is this response valid for that challenge and that key?".
fido2's Fido2Server does the ceremony checks (client data type, challenge,
origin, rpIdHash, UP/UV flags, signature). The extra rules here are:

  Attestation    fmt "none" only (options always request attestation="none").
  Public keys    COSE ES256 (-7), EdDSA (-8) and RS256 (-257), the algorithms
                 advertised in pubKeyCredParams.
  Origins        an explicit allow-list instead of fido2's rp_id suffix rule.
  crossOrigin    rejected.

Every failure raises CredentialMismatch with a short reason for the log;
callers turn it into False.

Wire shapes follow the WebAuthn JSON serialization browsers produce
(PublicKeyCredential.toJSON()): binary members are base64url strings. Byte
arrays (list of ints) are accepted too and normalized before fido2 sees them.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from fido2 import cbor
from fido2.cose import CoseKey
from fido2.server import Fido2Server
from fido2.utils import websafe_decode, websafe_encode
from fido2.webauthn import (
    Aaguid,
    AttestedCredentialData,
    AuthenticationResponse,
    CollectedClientData,
    PublicKeyCredentialRpEntity,
    RegistrationResponse,
    UserVerificationRequirement,
)

from core.errors import CredentialMismatch

# COSE algorithm identifiers, in order of preference for pubKeyCredParams
COSE_ALG_ES256 = -7
COSE_ALG_EDDSA = -8
COSE_ALG_RS256 = -257
SUPPORTED_ALGORITHMS = (COSE_ALG_ES256, COSE_ALG_EDDSA, COSE_ALG_RS256)

_COSE_ALG = 3

# fido2 raises these for anything it cannot parse or verify.
_FIDO2_ERRORS = (ValueError, TypeError, KeyError, NotImplementedError)


# ---------------------------------------------------------------------------
# Encoding helpers
# ---------------------------------------------------------------------------


def b64url_encode(data: bytes) -> str:
    return websafe_encode(data)


def b64url_decode(value: Any) -> bytes:
    """Decode a base64url string (padding optional) or a JSON byte array."""
    if isinstance(value, list):
        try:
            return bytes(value)
        except (TypeError, ValueError):
            raise CredentialMismatch("invalid byte array") from None
    if isinstance(value, str):
        try:
            return websafe_decode(value)
        except (ValueError, TypeError):
            raise CredentialMismatch("invalid base64url value") from None
    raise CredentialMismatch("missing binary value")


def normalize_credential_id(value: Any) -> str:
    """Canonical unpadded base64url form, so lookups match however the client encoded it."""
    return b64url_encode(b64url_decode(value))


def _credential_json(response: Any, members: tuple[str, ...]) -> dict[str, Any]:
    """Rebuild a client response in the canonical JSON form fido2 parses."""
    if not isinstance(response, dict) or not isinstance(response.get("response"), dict):
        raise CredentialMismatch("malformed credential response")
    credential_id = normalize_credential_id(response.get("rawId") or response.get("id"))
    return {
        "id": credential_id,
        "rawId": credential_id,
        "type": "public-key",
        "response": {name: b64url_encode(b64url_decode(response["response"].get(name))) for name in members},
    }


# ---------------------------------------------------------------------------
# Server and keys
# ---------------------------------------------------------------------------


def build_server(rp_id: str, rp_name: str, origins: Iterable[str]) -> Fido2Server:
    """A Fido2Server that accepts exactly the listed origins."""
    allowed = frozenset(origins)
    return Fido2Server(
        PublicKeyCredentialRpEntity(name=rp_name, id=rp_id),
        verify_origin=lambda origin: origin in allowed,
    )


def _state(challenge: bytes, require_user_verification: bool) -> dict[str, Any]:
    # Same shape Fido2Server.register_begin / authenticate_begin hand back.
    return {
        "challenge": websafe_encode(challenge),
        "user_verification": (
            UserVerificationRequirement.REQUIRED
            if require_user_verification
            else UserVerificationRequirement.PREFERRED
        ),
    }


def load_public_key(public_key: bytes) -> CoseKey:
    """Parse a stored CBOR COSE key. Raises CredentialMismatch if it is unusable."""
    try:
        cose = cbor.decode(public_key)
    except _FIDO2_ERRORS:
        raise CredentialMismatch("public key is not valid CBOR") from None
    return _supported_key(cose)


def _supported_key(cose: Any) -> CoseKey:
    if not isinstance(cose, dict):
        raise CredentialMismatch("public key is not a COSE map")
    alg = cose.get(_COSE_ALG)
    if alg not in SUPPORTED_ALGORITHMS:
        raise CredentialMismatch(f"unsupported COSE algorithm {alg!r}")
    return CoseKey.parse(cose)


def _reject_cross_origin(client_data: CollectedClientData) -> None:
    if client_data.cross_origin:
        raise CredentialMismatch("cross-origin ceremony")


# ---------------------------------------------------------------------------
# Ceremonies
# ---------------------------------------------------------------------------


@dataclass
class VerifiedRegistration:
    credential_id: bytes
    public_key: bytes  # CBOR-encoded COSE key
    sign_count: int
    aaguid: bytes
    user_verified: bool


def verify_registration_response(
    server: Fido2Server,
    response: Any,
    *,
    expected_challenge: bytes,
    require_user_verification: bool = False,
) -> VerifiedRegistration:
    """Verify a navigator.credentials.create() result."""
    payload = _credential_json(response, ("clientDataJSON", "attestationObject"))
    try:
        registration = RegistrationResponse.from_dict(payload)
        attestation = registration.response.attestation_object
        if attestation.fmt != "none":
            raise CredentialMismatch(f"unsupported attestation format {attestation.fmt!r}")
        auth_data = server.register_complete(_state(expected_challenge, require_user_verification), registration)
    except _FIDO2_ERRORS as exc:
        raise CredentialMismatch(str(exc) or type(exc).__name__) from None
    _reject_cross_origin(registration.response.client_data)

    credential = auth_data.credential_data
    if credential is None:
        raise CredentialMismatch("no attested credential data")
    if credential.credential_id != b64url_decode(payload["rawId"]):
        raise CredentialMismatch("credential id does not match attested data")
    # Reject keys we could never verify an assertion with.
    public_key = _supported_key(credential.public_key)

    return VerifiedRegistration(
        credential_id=credential.credential_id,
        public_key=cbor.encode(public_key),
        sign_count=auth_data.counter,
        aaguid=bytes(credential.aaguid),
        user_verified=auth_data.is_user_verified(),
    )


def verify_authentication_response(
    server: Fido2Server,
    response: Any,
    *,
    expected_challenge: bytes,
    public_key: bytes,
    require_user_verification: bool = False,
) -> int:
    """Verify a navigator.credentials.get() result against a stored COSE key.

    Returns the authenticator's new signature counter. Counter policy is the
    caller's decision.
    """
    payload = _credential_json(response, ("clientDataJSON", "authenticatorData", "signature"))
    credential = AttestedCredentialData.create(
        Aaguid.NONE, b64url_decode(payload["rawId"]), load_public_key(public_key)
    )
    try:
        authentication = AuthenticationResponse.from_dict(payload)
        server.authenticate_complete(
            _state(expected_challenge, require_user_verification), [credential], authentication
        )
    except _FIDO2_ERRORS as exc:
        raise CredentialMismatch(str(exc) or type(exc).__name__) from None
    _reject_cross_origin(authentication.response.client_data)
    return authentication.response.authenticator_data.counter
