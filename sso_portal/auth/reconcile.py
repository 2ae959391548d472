# sso_portal/auth/reconcile.py
"""
Identity reconciliation (JIT provisioning).

Maps verified SAML claims to a local account:
1. Look up by email (exact match on the NameID)
2. Found -> return it (optionally refresh profile / audit fields)
3. Not found -> create it with emailVerified=True and the default role

The IdP's signed assertion is treated as proof of the email address.
"""

import logging
from datetime import datetime, timezone

from sso_portal.auth.assertion import NormalizedClaims
from sso_portal.storage.users import LocalIdentity, UserStore

logger = logging.getLogger(__name__)


class IdentityReconciler:
    """Find-or-provision local identities for one IdP."""

    def __init__(
        self,
        store: UserStore,
        provider: str = "saml",
        default_role: str = "student",
        sync_profile_on_login: bool = False,
        record_login_audit: bool = False,
    ):
        self.store = store
        self.provider = provider
        self.default_role = default_role
        self.sync_profile_on_login = sync_profile_on_login
        self.record_login_audit = record_login_audit

    def reconcile(self, claims: NormalizedClaims) -> LocalIdentity:
        """Raises PersistenceError if the store rejects the write."""
        identity = self.store.find_by_email(claims.email)

        if identity is None:
            return self._provision(claims)

        updates = {}
        if self.sync_profile_on_login:
            updates.update(
                first_name=claims.given_name,
                last_name=claims.family_name,
                display_name=claims.display_name,
                sso_profile=claims.to_profile(),
            )
        if self.record_login_audit:
            updates["last_login_at"] = datetime.now(timezone.utc)
            updates.setdefault("sso_profile", claims.to_profile())

        if updates:
            identity = self.store.update(identity.id, **updates)
        logger.info(f"Existing user {identity.id} signed in via '{self.provider}'")
        return identity

    def _provision(self, claims: NormalizedClaims) -> LocalIdentity:
        fields = {
            "first_name": claims.given_name,
            "last_name": claims.family_name,
            "display_name": claims.display_name,
            "provider": self.provider,
            "provider_id": claims.subject,
            "is_active": True,
            "email_verified": True,
        }
        if self.record_login_audit:
            fields["last_login_at"] = datetime.now(timezone.utc)
            fields["sso_profile"] = claims.to_profile()

        return self.store.create(email=claims.email, role=self.default_role, **fields)
