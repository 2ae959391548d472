# sso_portal/auth/service_provider.py
"""
SAML 2.0 Service Provider (SP) side of the handshake.

SP-initiated SSO starts here:
1. SP builds an AuthnRequest (signed per configuration)
2. User is redirected to the IdP with the request (HTTP-Redirect binding)
3. IdP POSTs a signed Response back to /auth/callback

The metadata document is what the IdP admin imports to set up the trust
relationship: entity ID, ACS URL, certificate, NameID format.
"""

import logging
from urllib.parse import urlsplit

from onelogin.saml2.auth import OneLogin_Saml2_Auth
from onelogin.saml2.errors import OneLogin_Saml2_Error
from onelogin.saml2.settings import OneLogin_Saml2_Settings

from sso_portal.auth.errors import ConfigurationError
from sso_portal.auth.trust import TrustConfiguration

logger = logging.getLogger(__name__)


def saml_request_data(url: str) -> dict:
    """
    Describe a URL the way python3-saml expects a request.
    Built from configuration, never from the incoming request, so the
    result cannot be steered by request headers.
    """
    parts = urlsplit(url)
    https = parts.scheme == "https"
    return {
        "https": "on" if https else "off",
        "http_host": parts.hostname,
        "script_name": parts.path,
        "server_port": parts.port or (443 if https else 80),
        "get_data": {},
        "post_data": {},
    }


class ServiceProvider:
    """Builds login redirects and SP metadata from one TrustConfiguration."""

    def __init__(self, trust: TrustConfiguration):
        self.trust = trust
        try:
            self._settings = OneLogin_Saml2_Settings(trust.to_saml_settings())
        except OneLogin_Saml2_Error as e:
            raise ConfigurationError(f"Invalid SAML settings: {e}") from e

    def generate_login_redirect(self) -> str:
        """Return the IdP URL carrying a fresh AuthnRequest."""
        saml_auth = OneLogin_Saml2_Auth(
            saml_request_data(self.trust.callback_url),
            old_settings=self._settings,
        )
        url = saml_auth.login(
            return_to=self.trust.frontend_url,
            force_authn=self.trust.force_authn,
        )
        logger.info(f"Issued AuthnRequest {saml_auth.get_last_request_id()}")
        return url

    def generate_service_provider_metadata(self) -> str:
        metadata = self._settings.get_sp_metadata()
        errors = self._settings.validate_metadata(metadata)
        if errors:
            raise ConfigurationError(f"Generated SP metadata is invalid: {', '.join(errors)}")
        if isinstance(metadata, bytes):
            metadata = metadata.decode("utf-8")
        return metadata
