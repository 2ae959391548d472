# sso_portal/main.py
"""
SSO Portal: FastAPI app with SAML 2.0 SP-initiated single sign-on.

Run with:
    uvicorn sso_portal.main:create_app --factory
"""

import logging
from datetime import timedelta

from fastapi import FastAPI

from sso_portal.auth.assertion import AssertionVerifier
from sso_portal.auth.dependencies import AuthServices
from sso_portal.auth.reconcile import IdentityReconciler
from sso_portal.auth.routes import router as auth_router
from sso_portal.auth.service_provider import ServiceProvider
from sso_portal.auth.tokens import SessionIssuer
from sso_portal.auth.trust import TrustConfiguration
from sso_portal.config import Settings
from sso_portal.config import settings as default_settings
from sso_portal.storage.users import UserStore

logger = logging.getLogger(__name__)

VERSION = "0.3.0"


def build_services(settings: Settings, store: UserStore | None = None) -> AuthServices:
    """
    Build the immutable SAML/session objects shared by every request.
    Raises ConfigurationError if the trust configuration is unusable.
    """
    trust = TrustConfiguration.from_settings(settings)

    if store is None:
        store = UserStore.from_url(settings.database_url)
    store.ensure_role(settings.default_role)

    return AuthServices(
        trust=trust,
        service_provider=ServiceProvider(trust),
        verifier=AssertionVerifier(trust),
        reconciler=IdentityReconciler(
            store,
            provider=settings.identity_provider_tag,
            default_role=settings.default_role,
            sync_profile_on_login=settings.sync_profile_on_login,
            record_login_audit=settings.record_login_audit,
        ),
        issuer=SessionIssuer(
            store,
            secret=settings.token_secret,
            access_ttl=timedelta(hours=settings.access_token_ttl_hours),
            refresh_ttl=timedelta(days=settings.refresh_token_ttl_days),
            issuer=trust.sp_entity_id,
        ),
        store=store,
    )


def create_app(settings: Settings | None = None, store: UserStore | None = None) -> FastAPI:
    """Application factory. Fails fast on bad configuration."""
    if settings is None:
        settings = default_settings

    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if settings.token_secret == Settings.model_fields["token_secret"].default:
        logger.warning("TOKEN_SECRET is the built-in default, set it in production")

    app = FastAPI(title="SSO Portal", version=VERSION)
    app.state.auth = build_services(settings, store)
    app.include_router(auth_router)

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        return {"status": "ok", "version": VERSION}

    return app
