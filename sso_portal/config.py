# sso_portal/config.py
"""
Application configuration.
Supports loading secrets from either .env or HashiCorp Vault.

Only raw values live here. sso_portal.auth.trust turns the SAML part into a
validated, immutable TrustConfiguration at startup.
"""

import os
import logging

from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)


def get_secret_from_vault(secret_path: str, key: str) -> str | None:
    """
    Fetch a secret from HashiCorp Vault (KV v2 secrets engine).
    Returns None if Vault is unavailable; the app then falls back to .env.
    """
    try:
        import hvac

        vault_addr = os.getenv("VAULT_ADDR", "http://127.0.0.1:8200")
        vault_token = os.getenv("VAULT_TOKEN")

        if not vault_token:
            logger.info("No VAULT_TOKEN set, skipping Vault")
            return None

        client = hvac.Client(url=vault_addr, token=vault_token)

        if not client.is_authenticated():
            logger.warning("Vault authentication failed")
            return None

        secret = client.secrets.kv.v2.read_secret_version(path=secret_path)
        value = secret["data"]["data"].get(key)
        logger.info(f"Loaded '{key}' from Vault path '{secret_path}'")
        return value

    except Exception as e:
        logger.warning(f"Vault error: {e}")
        return None


class Settings(BaseSettings):
    """App settings. Priority: Vault > environment variables > .env file."""

    # Identity Provider
    idp_sso_url: str = ""
    idp_entity_id: str = ""
    idp_certificate: str = ""

    # Service Provider
    sp_entity_id: str = ""
    sp_certificate: str = ""
    sp_private_key: str = ""
    sp_callback_url: str = ""  # defaults to {app_url}/auth/callback

    # SAML security
    signature_algorithm: str = "sha256"
    digest_algorithm: str = "sha256"
    name_id_format: str = "urn:oasis:names:tc:SAML:1.1:nameid-format:emailAddress"
    clock_skew_seconds: int = 5
    authn_requests_signed: bool = True
    want_assertions_signed: bool = True
    want_response_signed: bool = False
    force_authn: bool = False
    validate_audience: bool = True

    # Login policy
    reject_replayed_assertions: bool = False
    sync_profile_on_login: bool = False
    record_login_audit: bool = False
    identity_provider_tag: str = "saml"
    default_role: str = "student"

    # App
    app_url: str = "http://localhost:8000"
    frontend_url: str = "http://localhost:3000"
    database_url: str = "sqlite:///./sso_portal.db"
    log_level: str = "INFO"

    # Session tokens
    token_secret: str = "change-me-in-production-change-me-in-production"
    access_token_ttl_hours: int = 24
    refresh_token_ttl_days: int = 30

    # Vault
    vault_enabled: bool = False
    vault_addr: str = "http://127.0.0.1:8200"
    vault_token: str = ""
    vault_secret_path: str = "sso-portal/saml"

    class Config:
        env_file = ".env"
        extra = "ignore"

    def __init__(self, **kwargs):
        super().__init__(**kwargs)

        if self.vault_enabled:
            private_key = get_secret_from_vault(self.vault_secret_path, "sp_private_key")
            if private_key:
                self.sp_private_key = private_key
                logger.info("Using sp_private_key from Vault")

            token_secret = get_secret_from_vault(self.vault_secret_path, "token_secret")
            if token_secret:
                self.token_secret = token_secret
                logger.info("Using token_secret from Vault")

    @property
    def callback_url(self) -> str:
        return self.sp_callback_url or f"{self.app_url.rstrip('/')}/auth/callback"


settings = Settings()
