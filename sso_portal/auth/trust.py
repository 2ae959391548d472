# sso_portal/auth/trust.py
"""
Trust configuration for the single IdP relationship.

Built once at startup from Settings and never mutated afterwards. Anything
missing or malformed raises ConfigurationError so the process refuses to
start. Misconfiguration is an operator error, so nothing is retried.
"""

import logging
from dataclasses import dataclass
from urllib.parse import urlsplit

from cryptography import x509
from cryptography.hazmat.primitives import serialization
from onelogin.saml2.constants import OneLogin_Saml2_Constants
from onelogin.saml2.utils import OneLogin_Saml2_Utils

from sso_portal.auth.errors import ConfigurationError
from sso_portal.auth.utils import origin_of

logger = logging.getLogger(__name__)

# Short algorithm names -> (signature URI, digest URI)
ALGORITHMS = {
    "sha1": (OneLogin_Saml2_Constants.RSA_SHA1, OneLogin_Saml2_Constants.SHA1),
    "sha256": (OneLogin_Saml2_Constants.RSA_SHA256, OneLogin_Saml2_Constants.SHA256),
    "sha384": (OneLogin_Saml2_Constants.RSA_SHA384, OneLogin_Saml2_Constants.SHA384),
    "sha512": (OneLogin_Saml2_Constants.RSA_SHA512, OneLogin_Saml2_Constants.SHA512),
}


def _require_url(name: str, value: str) -> str:
    if not value:
        raise ConfigurationError(f"{name} is not set")
    parts = urlsplit(value)
    if parts.scheme not in ("http", "https") or not parts.netloc:
        raise ConfigurationError(f"{name} is not an absolute http(s) URL: {value!r}")
    return value


def _load_certificate(name: str, value: str) -> str:
    """Normalize to PEM with headers and make sure it parses."""
    if not value or not value.strip():
        raise ConfigurationError(f"{name} is not set")
    pem = OneLogin_Saml2_Utils.format_cert(value.strip(), heads=True)
    try:
        x509.load_pem_x509_certificate(pem.encode("ascii"))
    except ValueError as e:
        raise ConfigurationError(f"{name} is not a valid X.509 certificate: {e}") from e
    return pem


def _load_private_key(name: str, value: str) -> str:
    if not value or not value.strip():
        raise ConfigurationError(f"{name} is not set")
    pem = OneLogin_Saml2_Utils.format_private_key(value.strip(), heads=True)
    try:
        serialization.load_pem_private_key(pem.encode("ascii"), password=None)
    except (ValueError, TypeError) as e:
        raise ConfigurationError(f"{name} is not a valid unencrypted private key: {e}") from e
    return pem


@dataclass(frozen=True)
class TrustConfiguration:
    """Validated IdP/SP parameters. Safe to share across requests."""

    idp_sso_url: str
    idp_entity_id: str
    idp_certificate: str
    sp_entity_id: str
    callback_url: str
    sp_certificate: str
    sp_private_key: str
    app_url: str
    frontend_url: str
    signature_algorithm: str = OneLogin_Saml2_Constants.RSA_SHA256
    digest_algorithm: str = OneLogin_Saml2_Constants.SHA256
    name_id_format: str = OneLogin_Saml2_Constants.NAMEID_EMAIL_ADDRESS
    clock_skew_seconds: int = 5
    authn_requests_signed: bool = True
    want_assertions_signed: bool = True
    want_response_signed: bool = False
    force_authn: bool = False
    validate_audience: bool = True
    reject_replayed_assertions: bool = False

    @classmethod
    def from_settings(cls, settings) -> "TrustConfiguration":
        """Validate raw settings. Raises ConfigurationError on the first problem found."""
        idp_sso_url = _require_url("IDP_SSO_URL", settings.idp_sso_url)
        app_url = _require_url("APP_URL", settings.app_url).rstrip("/")
        frontend_url = _require_url("FRONTEND_URL", settings.frontend_url).rstrip("/")
        callback_url = _require_url("SP_CALLBACK_URL", settings.callback_url)

        if origin_of(callback_url) != origin_of(app_url):
            raise ConfigurationError(
                f"Callback URL origin {origin_of(callback_url)} does not match "
                f"application origin {origin_of(app_url)}"
            )

        if not settings.idp_entity_id:
            raise ConfigurationError("IDP_ENTITY_ID is not set")
        if not settings.sp_entity_id:
            raise ConfigurationError("SP_ENTITY_ID is not set")

        for field in ("signature_algorithm", "digest_algorithm"):
            if getattr(settings, field).lower() not in ALGORITHMS:
                raise ConfigurationError(
                    f"{field.upper()} must be one of {sorted(ALGORITHMS)}, "
                    f"got {getattr(settings, field)!r}"
                )

        if settings.clock_skew_seconds < 0:
            raise ConfigurationError("CLOCK_SKEW_SECONDS must not be negative")

        trust = cls(
            idp_sso_url=idp_sso_url,
            idp_entity_id=settings.idp_entity_id,
            idp_certificate=_load_certificate("IDP_CERTIFICATE", settings.idp_certificate),
            sp_entity_id=settings.sp_entity_id,
            callback_url=callback_url,
            sp_certificate=_load_certificate("SP_CERTIFICATE", settings.sp_certificate),
            sp_private_key=_load_private_key("SP_PRIVATE_KEY", settings.sp_private_key),
            app_url=app_url,
            frontend_url=frontend_url,
            signature_algorithm=ALGORITHMS[settings.signature_algorithm.lower()][0],
            digest_algorithm=ALGORITHMS[settings.digest_algorithm.lower()][1],
            name_id_format=settings.name_id_format,
            clock_skew_seconds=settings.clock_skew_seconds,
            authn_requests_signed=settings.authn_requests_signed,
            want_assertions_signed=settings.want_assertions_signed,
            want_response_signed=settings.want_response_signed,
            force_authn=settings.force_authn,
            validate_audience=settings.validate_audience,
            reject_replayed_assertions=settings.reject_replayed_assertions,
        )
        logger.info(f"Trust configuration loaded for IdP '{trust.idp_entity_id}'")
        return trust

    def to_saml_settings(self) -> dict:
        """Settings dict in the shape python3-saml expects."""
        return {
            "strict": True,
            "debug": False,
            "sp": {
                "entityId": self.sp_entity_id,
                "assertionConsumerService": {
                    "url": self.callback_url,
                    "binding": OneLogin_Saml2_Constants.BINDING_HTTP_POST,
                },
                "NameIDFormat": self.name_id_format,
                "x509cert": self.sp_certificate,
                "privateKey": self.sp_private_key,
            },
            "idp": {
                "entityId": self.idp_entity_id,
                "singleSignOnService": {
                    "url": self.idp_sso_url,
                    "binding": OneLogin_Saml2_Constants.BINDING_HTTP_REDIRECT,
                },
                "x509cert": self.idp_certificate,
            },
            "security": {
                "authnRequestsSigned": self.authn_requests_signed,
                "wantAssertionsSigned": self.want_assertions_signed,
                "wantMessagesSigned": self.want_response_signed,
                "signatureAlgorithm": self.signature_algorithm,
                "digestAlgorithm": self.digest_algorithm,
                "requestedAuthnContext": False,
                "wantNameId": True,
                "allowSingleLabelDomains": True,
            },
        }
