# sso_portal/auth/dependencies.py
"""FastAPI dependencies for authentication."""

import logging
from dataclasses import dataclass

from fastapi import Depends, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from sso_portal.auth.assertion import AssertionVerifier
from sso_portal.auth.errors import PersistenceError, Unauthenticated
from sso_portal.auth.reconcile import IdentityReconciler
from sso_portal.auth.service_provider import ServiceProvider
from sso_portal.auth.tokens import SessionIssuer
from sso_portal.auth.trust import TrustConfiguration
from sso_portal.storage.users import LocalIdentity, UserStore

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class AuthServices:
    """Everything the /auth routes need, built once in create_app()."""

    trust: TrustConfiguration
    service_provider: ServiceProvider
    verifier: AssertionVerifier
    reconciler: IdentityReconciler
    issuer: SessionIssuer
    store: UserStore


def get_services(request: Request) -> AuthServices:
    return request.app.state.auth


def unauthenticated(detail: str = "Not authenticated. Please log in.") -> HTTPException:
    return HTTPException(
        status_code=401,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def store_unavailable(error: PersistenceError) -> HTTPException:
    logger.warning(f"Session store unavailable: {error}")
    return HTTPException(status_code=503, detail="Session store unavailable. Try again later.")


async def get_bearer_token(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> str:
    """
    Extract the bearer token from the Authorization header.
    Raises 401 if it is missing.
    """
    if credentials is None or not credentials.credentials:
        raise unauthenticated()
    return credentials.credentials


async def get_current_user(
    token: str = Depends(get_bearer_token),
    services: AuthServices = Depends(get_services),
) -> LocalIdentity:
    """
    Resolve the identity behind the bearer token.
    Raises 401 if the token is invalid, expired or revoked.
    """
    try:
        return await run_in_threadpool(services.issuer.validate, token)
    except Unauthenticated:
        raise unauthenticated("Invalid or expired token.")
    except PersistenceError as e:
        raise store_unavailable(e)
