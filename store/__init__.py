"""store/ -- Persistence adapter for TrustGate.

Layer rule: store/ imports only stdlib, third-party libraries, and core/.
It does NOT import from security/. security/ imports from store/, not the
other way around.
"""
