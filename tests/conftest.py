"""
Shared fixtures: throwaway IdP/SP keys, signed SAML Responses, an app wired
to an in-memory SQLite store.
"""

import base64
import uuid
from datetime import datetime, timedelta, timezone
from xml.sax.saxutils import escape, quoteattr

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID
from fastapi.testclient import TestClient
from onelogin.saml2.utils import OneLogin_Saml2_Utils

from sso_portal.auth.trust import TrustConfiguration
from sso_portal.config import Settings
from sso_portal.main import create_app
from sso_portal.storage.users import UserStore

IDP_ENTITY_ID = "https://idp.example.com/saml2"
IDP_SSO_URL = "https://idp.example.com/saml2/sso"
SP_ENTITY_ID = "https://sp.example.com/auth/metadata"
APP_URL = "https://sp.example.com"
FRONTEND_URL = "https://app.example.com"
CALLBACK_URL = f"{APP_URL}/auth/callback"
TOKEN_SECRET = "test-token-secret-which-is-long-enough-for-hs256"


def make_keypair(common_name: str) -> tuple[str, str]:
    """Self-signed RSA certificate. Returns (private key PEM, certificate PEM)."""
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    now = datetime.now(timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=1))
        .not_valid_after(now + timedelta(days=365))
        .sign(key, hashes.SHA256())
    )
    key_pem = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode("ascii")
    return key_pem, cert.public_bytes(serialization.Encoding.PEM).decode("ascii")


@pytest.fixture(scope="session")
def idp_keys():
    return make_keypair("idp.example.com")


@pytest.fixture(scope="session")
def sp_keys():
    return make_keypair("sp.example.com")


@pytest.fixture(scope="session")
def rogue_keys():
    return make_keypair("attacker.example.net")


@pytest.fixture
def make_settings(idp_keys, sp_keys):
    def _make(**overrides) -> Settings:
        values = {
            "idp_sso_url": IDP_SSO_URL,
            "idp_entity_id": IDP_ENTITY_ID,
            "idp_certificate": idp_keys[1],
            "sp_entity_id": SP_ENTITY_ID,
            "sp_certificate": sp_keys[1],
            "sp_private_key": sp_keys[0],
            "app_url": APP_URL,
            "frontend_url": FRONTEND_URL,
            "database_url": "sqlite://",
            "token_secret": TOKEN_SECRET,
            "vault_enabled": False,
        }
        values.update(overrides)
        return Settings(_env_file=None, **values)

    return _make


@pytest.fixture
def settings(make_settings):
    return make_settings()


@pytest.fixture
def trust(settings):
    return TrustConfiguration.from_settings(settings)


@pytest.fixture
def store():
    store = UserStore.from_url("sqlite://")
    store.ensure_role("student")
    return store


@pytest.fixture
def app(settings, store):
    return create_app(settings, store=store)


@pytest.fixture
def client(app):
    return TestClient(app, base_url=APP_URL)


def _saml_time(ts: int) -> str:
    return OneLogin_Saml2_Utils.parse_time_to_SAML(ts)


@pytest.fixture
def build_response(idp_keys):
    """
    Factory for base64 SAMLResponse values.

    The assertion is signed on its own with the IdP key (unless
    sign_assertion=False) and then embedded into the Response, which is
    optionally signed as well.
    """

    def _build(
        email: str = "jane@example.com",
        attributes: dict | None = None,
        issuer: str = IDP_ENTITY_ID,
        response_issuer: str | None = None,
        audience: str = SP_ENTITY_ID,
        not_before: int | None = None,
        not_on_or_after: int | None = None,
        now: int | None = None,
        assertion_id: str | None = None,
        sign_assertion: bool = True,
        sign_response: bool = False,
        keys: tuple[str, str] | None = None,
        status: str = "urn:oasis:names:tc:SAML:2.0:status:Success",
        raw: bool = False,
        destination: str | None = CALLBACK_URL,
        recipient: str = CALLBACK_URL,
    ):
        key_pem, cert_pem = keys or idp_keys
        now = now if now is not None else OneLogin_Saml2_Utils.now()
        not_before = not_before if not_before is not None else now - 60
        not_on_or_after = not_on_or_after if not_on_or_after is not None else now + 300
        assertion_id = assertion_id or f"_a{uuid.uuid4().hex}"
        if attributes is None:
            attributes = {"firstName": ["Jane"], "lastName": ["Doe"], "displayName": ["Jane Doe"]}

        attribute_xml = "".join(
            f"<saml:Attribute Name={quoteattr(name)}>"
            + "".join(f"<saml:AttributeValue>{escape(v)}</saml:AttributeValue>" for v in values)
            + "</saml:Attribute>"
            for name, values in attributes.items()
        )

        assertion = (
            '<saml:Assertion xmlns:saml="urn:oasis:names:tc:SAML:2.0:assertion" '
            f'ID="{assertion_id}" Version="2.0" IssueInstant="{_saml_time(now)}">'
            f"<saml:Issuer>{escape(issuer)}</saml:Issuer>"
            "<saml:Subject>"
            '<saml:NameID Format="urn:oasis:names:tc:SAML:1.1:nameid-format:emailAddress">'
            f"{escape(email)}</saml:NameID>"
            '<saml:SubjectConfirmation Method="urn:oasis:names:tc:SAML:2.0:cm:bearer">'
            f'<saml:SubjectConfirmationData NotOnOrAfter="{_saml_time(not_on_or_after)}" '
            f'Recipient={quoteattr(recipient)}/>'
            "</saml:SubjectConfirmation>"
            "</saml:Subject>"
            f'<saml:Conditions NotBefore="{_saml_time(not_before)}" '
            f'NotOnOrAfter="{_saml_time(not_on_or_after)}">'
            f"<saml:AudienceRestriction><saml:Audience>{escape(audience)}</saml:Audience>"
            "</saml:AudienceRestriction>"
            "</saml:Conditions>"
            f'<saml:AuthnStatement AuthnInstant="{_saml_time(now)}" SessionIndex="_s{uuid.uuid4().hex}">'
            "<saml:AuthnContext><saml:AuthnContextClassRef>"
            "urn:oasis:names:tc:SAML:2.0:ac:classes:PasswordProtectedTransport"
            "</saml:AuthnContextClassRef></saml:AuthnContext>"
            "</saml:AuthnStatement>"
            f"<saml:AttributeStatement>{attribute_xml}</saml:AttributeStatement>"
            "</saml:Assertion>"
        )
        if sign_assertion:
            assertion = OneLogin_Saml2_Utils.add_sign(assertion, key_pem, cert_pem).decode("utf-8")

        response = (
            '<samlp:Response xmlns:samlp="urn:oasis:names:tc:SAML:2.0:protocol" '
            'xmlns:saml="urn:oasis:names:tc:SAML:2.0:assertion" '
            f'ID="_r{uuid.uuid4().hex}" Version="2.0" IssueInstant="{_saml_time(now)}"'
            + (f" Destination={quoteattr(destination)}" if destination is not None else "")
            + ">"
            f"<saml:Issuer>{escape(response_issuer or issuer)}</saml:Issuer>"
            f'<samlp:Status><samlp:StatusCode Value="{status}"/></samlp:Status>'
            f"{assertion}"
            "</samlp:Response>"
        )
        if sign_response:
            response = OneLogin_Saml2_Utils.add_sign(response, key_pem, cert_pem).decode("utf-8")

        if raw:
            return response
        return base64.b64encode(response.encode("utf-8")).decode("ascii")

    return _build
