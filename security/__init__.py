"""security/ -- Trust and access control services for TrustGate.

MFA (TOTP + backup codes), WebAuthn, RBAC and threat detection. Each manager
is a plain object constructed once per process with its store, crypto and
event log injected (see security/services.py).

Layer rule: security/ imports from core/ and store/ only.
"""
