# sso_portal/auth/errors.py
"""
Error taxonomy for the SAML handshake and session layer.

Handshake errors carry operator-facing detail in their message. That detail
goes to the server log only; clients always see the same generic failure.
"""


class SSOError(Exception):
    """Base class for every error raised by sso_portal."""


class ConfigurationError(SSOError):
    """Trust configuration is missing or malformed. Fatal at startup."""


class HandshakeError(SSOError):
    """An inbound SAML Response was rejected."""


class MalformedResponse(HandshakeError):
    pass


class InvalidSignature(HandshakeError):
    pass


class Expired(HandshakeError):
    pass


class IssuerMismatch(HandshakeError):
    pass


class AudienceMismatch(HandshakeError):
    pass


class ReplayDetected(HandshakeError):
    pass


class PersistenceError(SSOError):
    """The user store rejected a write."""


class Unauthenticated(SSOError):
    """Token missing, invalid, expired or revoked."""
