# sso_portal/auth/routes.py
"""
SAML 2.0 Service Provider (SP) endpoints.

SP-initiated SSO flow:
1. GET  /auth/login     -> 302 to the IdP with an AuthnRequest
2. User authenticates at the IdP
3. POST /auth/callback  <- IdP posts the signed SAMLResponse (HTTP-POST binding)
4. SP verifies it, finds or creates the local user, mints tokens
5. 302 to {frontend}/auth/callback?token=...&refreshToken=...

After that the client talks to /auth/me, /auth/refresh and /auth/logout
with "Authorization: Bearer <token>".

Handshake failures all look the same to the caller: 500 with
{"error": "Authentication failed"}. The specific reason is only logged.
"""

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse, RedirectResponse, Response
from pydantic import BaseModel, ConfigDict, Field

from sso_portal.auth.dependencies import (
    AuthServices,
    get_bearer_token,
    get_current_user,
    get_services,
    store_unavailable,
    unauthenticated,
)
from sso_portal.auth.errors import HandshakeError, PersistenceError, Unauthenticated
from sso_portal.auth.tokens import SessionToken
from sso_portal.auth.utils import build_query_string
from sso_portal.storage.users import LocalIdentity

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["SAML"])

AUTHENTICATION_FAILED = {"error": "Authentication failed"}


class RefreshRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    refresh_token: str = Field(alias="refreshToken")


def _handshake(services: AuthServices, saml_response: str) -> SessionToken:
    """Verify -> reconcile -> issue. Runs in a worker thread."""
    claims = services.verifier.verify(saml_response)
    identity = services.reconciler.reconcile(claims)
    return services.issuer.issue(identity)


def _token_body(tokens: SessionToken) -> dict:
    return {
        "token": tokens.access_token,
        "refreshToken": tokens.refresh_token,
        "expiresAt": tokens.expires_at.isoformat(),
    }


@router.get("/login")
async def saml_login(services: AuthServices = Depends(get_services)):
    """
    Initiate SAML authentication (SP-Initiated SSO).
    The target is built from configuration only, never from request parameters.
    """
    return RedirectResponse(
        url=services.service_provider.generate_login_redirect(),
        status_code=302,
    )


@router.post("/callback")
async def saml_callback(request: Request, services: AuthServices = Depends(get_services)):
    """
    Assertion Consumer Service: receives the SAML Response from the IdP.

    Validation steps (see sso_portal.auth.assertion):
    1. Verify XML signature against IdP's public certificate
    2. Check issuer, destination, time window and audience restriction
    3. Extract NameID and attributes
    """
    form_data = await request.form()
    saml_response = form_data.get("SAMLResponse")

    if not isinstance(saml_response, str) or not saml_response:
        logger.warning("SAML callback without a SAMLResponse field")
        return JSONResponse(AUTHENTICATION_FAILED, status_code=500)

    try:
        tokens = await run_in_threadpool(_handshake, services, saml_response)
    except HandshakeError as e:
        logger.warning(f"SAML handshake rejected ({type(e).__name__}): {e}")
        return JSONResponse(AUTHENTICATION_FAILED, status_code=500)
    except PersistenceError as e:
        logger.warning(f"SAML login could not be persisted: {e}")
        return JSONResponse(AUTHENTICATION_FAILED, status_code=500)
    except Exception:
        logger.exception("Unexpected error while processing SAML callback")
        return JSONResponse(AUTHENTICATION_FAILED, status_code=500)

    query = build_query_string(
        {"token": tokens.access_token, "refreshToken": tokens.refresh_token}
    )
    return RedirectResponse(
        url=f"{services.trust.frontend_url}/auth/callback?{query}",
        status_code=302,
    )


@router.post("/logout")
async def logout(
    token: str = Depends(get_bearer_token),
    services: AuthServices = Depends(get_services),
):
    """Revoke the bearer token's session."""
    try:
        await run_in_threadpool(services.issuer.revoke, token)
    except Unauthenticated:
        raise unauthenticated("Invalid or expired token.")
    except PersistenceError as e:
        raise store_unavailable(e)
    return {"message": "Logged out successfully"}


@router.get("/me")
async def me(user: LocalIdentity = Depends(get_current_user)):
    """Profile of the user behind the bearer token."""
    return user.to_profile()


@router.post("/refresh")
async def refresh(body: RefreshRequest, services: AuthServices = Depends(get_services)):
    """Exchange a refresh token for a new token pair (rotating the session)."""
    try:
        tokens = await run_in_threadpool(services.issuer.refresh, body.refresh_token)
    except Unauthenticated:
        raise unauthenticated("Invalid or expired refresh token.")
    except PersistenceError as e:
        raise store_unavailable(e)
    return _token_body(tokens)


@router.get("/metadata")
async def saml_metadata(services: AuthServices = Depends(get_services)):
    """
    SP Metadata endpoint. Returns XML describing this Service Provider.

    An IdP admin imports this metadata to configure the trust relationship.
    Contains: entity ID, ACS URL, certificate, NameID format.
    """
    return Response(
        content=services.service_provider.generate_service_provider_metadata(),
        media_type="application/xml",
    )
