# sso_portal/auth/assertion.py
"""
Assertion Consumer Service logic: turn a raw SAMLResponse into claims.

Validation steps, in order:
1. Decode and parse (DTDs/entities forbidden), check status and shape
2. Verify XML signature(s) against the IdP's certificate
3. Check the issuer matches the configured IdP and Destination/Recipient name our ACS URL
4. Check Conditions / SubjectConfirmationData time window (with clock skew)
5. Check audience restriction and, optionally, assertion replay
6. Extract NameID and attributes

Nothing from the assertion content is trusted before step 2 passes.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Callable

from lxml import etree
from onelogin.saml2.constants import OneLogin_Saml2_Constants
from onelogin.saml2.errors import OneLogin_Saml2_Error, OneLogin_Saml2_ValidationError
from onelogin.saml2.utils import OneLogin_Saml2_Utils
from onelogin.saml2.xml_utils import OneLogin_Saml2_XML

from sso_portal.auth.errors import (
    AudienceMismatch,
    Expired,
    InvalidSignature,
    IssuerMismatch,
    MalformedResponse,
    ReplayDetected,
)
from sso_portal.auth.trust import TrustConfiguration

logger = logging.getLogger(__name__)

RESPONSE_TAG = "{%s}Response" % OneLogin_Saml2_Constants.NS_SAMLP

# Claim -> attribute names, short form first. Short form wins when both are present.
CLAIM_ATTRIBUTES = {
    "given_name": (
        "firstName",
        "http://schemas.xmlsoap.org/ws/2005/05/identity/claims/givenname",
    ),
    "family_name": (
        "lastName",
        "http://schemas.xmlsoap.org/ws/2005/05/identity/claims/surname",
    ),
    "display_name": (
        "displayName",
        "http://schemas.microsoft.com/identity/claims/displayname",
    ),
    "groups": (
        "groups",
        "http://schemas.xmlsoap.org/claims/Group",
    ),
}


@dataclass(frozen=True)
class NormalizedClaims:
    """Identity claims extracted from one verified assertion."""

    subject: str
    given_name: str | None = None
    family_name: str | None = None
    display_name: str | None = None
    groups: list[str] = field(default_factory=list)
    assertion_id: str | None = None
    session_index: str | None = None
    name_id_format: str | None = None
    attributes: dict[str, list[str]] = field(default_factory=dict)

    @property
    def email(self) -> str:
        return self.subject

    def to_profile(self) -> dict:
        """Snapshot stored as the identity's ssoProfile."""
        return {
            "nameId": self.subject,
            "nameIdFormat": self.name_id_format,
            "sessionIndex": self.session_index,
            "groups": list(self.groups),
            "attributes": {k: list(v) for k, v in self.attributes.items()},
        }


class ReplayCache:
    """Assertion IDs already consumed, kept until their validity window closes."""

    def __init__(self):
        self._seen: dict[str, int] = {}
        self._lock = threading.Lock()

    def check_and_add(self, assertion_id: str, expires_at: int, now: int) -> None:
        with self._lock:
            self._seen = {k: v for k, v in self._seen.items() if v >= now}
            if assertion_id in self._seen:
                raise ReplayDetected(f"Assertion {assertion_id} was already used")
            self._seen[assertion_id] = expires_at

    def __len__(self):
        return len(self._seen)


def _query(elem, path: str) -> list:
    return OneLogin_Saml2_XML.query(elem, path)


def _text(elem) -> str:
    return (elem.text or "").strip() if elem is not None else ""


def _parse_time(value: str) -> int:
    try:
        return OneLogin_Saml2_Utils.parse_SAML_to_time(value)
    except Exception as e:  # python3-saml raises a bare Exception for bad formats
        raise MalformedResponse(f"Unparseable timestamp {value!r}") from e


class AssertionVerifier:
    """
    Validates inbound SAML Responses for a single IdP trust relationship.

    Built once at startup and shared by all requests. The only mutable state
    is the optional replay cache, which is lock-protected.
    """

    def __init__(
        self,
        trust: TrustConfiguration,
        clock: Callable[[], int] = OneLogin_Saml2_Utils.now,
        replay_cache: ReplayCache | None = None,
    ):
        self.trust = trust
        self.clock = clock
        if replay_cache is None and trust.reject_replayed_assertions:
            replay_cache = ReplayCache()
        self.replay_cache = replay_cache

    def verify(self, raw_response: str | bytes) -> NormalizedClaims:
        """Verify a base64 SAMLResponse form value and return its claims."""
        root = self._parse(raw_response)
        assertion = self._single_assertion(root)

        self._verify_signatures(root, assertion)
        self._verify_issuer(root, assertion)
        self._verify_destination(root, assertion)
        now = self.clock()
        expires_at = self._verify_time_window(assertion, now)
        self._verify_audience(assertion)

        claims = self._extract_claims(assertion)

        if self.replay_cache is not None:
            if not claims.assertion_id:
                raise MalformedResponse("Assertion has no ID")
            self.replay_cache.check_and_add(
                claims.assertion_id,
                expires_at if expires_at is not None else now + 24 * 3600,
                now,
            )

        logger.info(f"Verified assertion {claims.assertion_id} from '{self.trust.idp_entity_id}'")
        return claims

    def _parse(self, raw_response: str | bytes):
        if not raw_response:
            raise MalformedResponse("Empty SAMLResponse")
        try:
            xml = OneLogin_Saml2_Utils.b64decode(raw_response)
        except (ValueError, TypeError) as e:
            raise MalformedResponse(f"SAMLResponse is not valid base64: {e}") from e

        try:
            root = OneLogin_Saml2_XML.to_etree(xml)
        except (etree.XMLSyntaxError, ValueError) as e:
            raise MalformedResponse(f"SAMLResponse is not well-formed XML: {e}") from e

        if root.tag != RESPONSE_TAG:
            raise MalformedResponse(f"Unexpected root element {root.tag}")

        status_codes = _query(root, "/samlp:Response/samlp:Status/samlp:StatusCode")
        if not status_codes:
            raise MalformedResponse("Response has no StatusCode")
        status = status_codes[0].get("Value")
        if status != OneLogin_Saml2_Constants.STATUS_SUCCESS:
            raise MalformedResponse(f"IdP returned status {status}")

        return root

    def _single_assertion(self, root):
        if _query(root, "//saml:EncryptedAssertion"):
            raise MalformedResponse("Encrypted assertions are not supported")

        assertions = _query(root, "//saml:Assertion")
        if len(assertions) != 1:
            raise MalformedResponse(f"Expected exactly one Assertion, got {len(assertions)}")
        assertion = assertions[0]
        if assertion.getparent() is not root:
            raise MalformedResponse("Assertion is not a direct child of the Response")
        return assertion

    def _verify_signatures(self, root, assertion):
        response_signatures = _query(root, OneLogin_Saml2_Utils.RESPONSE_SIGNATURE_XPATH)
        assertion_signatures = _query(root, OneLogin_Saml2_Utils.ASSERTION_SIGNATURE_XPATH)
        all_signatures = _query(root, "//ds:Signature")

        if len(all_signatures) != len(response_signatures) + len(assertion_signatures):
            raise InvalidSignature("Signature found in an unexpected location")
        if len(response_signatures) > 1 or len(assertion_signatures) > 1:
            raise InvalidSignature("More than one signature on a signed element")
        if not all_signatures:
            raise InvalidSignature("Neither the Response nor the Assertion is signed")
        if self.trust.want_response_signed and not response_signatures:
            raise InvalidSignature("Response is not signed")
        if self.trust.want_assertions_signed and not assertion_signatures:
            raise InvalidSignature("Assertion is not signed")

        checks = (
            (response_signatures, root, OneLogin_Saml2_Utils.RESPONSE_SIGNATURE_XPATH),
            (assertion_signatures, assertion, OneLogin_Saml2_Utils.ASSERTION_SIGNATURE_XPATH),
        )
        for signatures, signed_element, xpath in checks:
            if not signatures:
                continue
            self._check_reference(signatures[0], signed_element)
            try:
                OneLogin_Saml2_Utils.validate_sign(
                    root,
                    cert=self.trust.idp_certificate,
                    xpath=xpath,
                    raise_exceptions=True,
                )
            except (OneLogin_Saml2_Error, OneLogin_Saml2_ValidationError) as e:
                raise InvalidSignature(f"Signature validation failed: {e}") from e

    @staticmethod
    def _check_reference(signature, signed_element):
        # Signature wrapping: the signature must cover the element that holds it
        references = _query(signature, "./ds:SignedInfo/ds:Reference")
        if len(references) != 1:
            raise InvalidSignature(f"Expected one signature Reference, got {len(references)}")
        element_id = signed_element.get("ID")
        uri = references[0].get("URI")
        if not element_id or uri not in ("", f"#{element_id}"):
            raise InvalidSignature(f"Signature Reference {uri!r} does not cover its parent element")

    def _verify_issuer(self, root, assertion):
        expected = self.trust.idp_entity_id

        issuers = _query(assertion, "./saml:Issuer")
        actual = _text(issuers[0]) if issuers else ""
        if actual != expected:
            raise IssuerMismatch(f"Assertion issuer {actual!r} does not match {expected!r}")

        response_issuers = _query(root, "/samlp:Response/saml:Issuer")
        if response_issuers and _text(response_issuers[0]) != expected:
            raise IssuerMismatch(
                f"Response issuer {_text(response_issuers[0])!r} does not match {expected!r}"
            )

    def _verify_destination(self, root, assertion):
        """The Response and its bearer confirmation must name our ACS URL."""
        expected = self.trust.callback_url

        destination = root.get("Destination")
        if destination is not None and destination != expected:
            raise MalformedResponse(f"Response Destination {destination!r} is not {expected!r}")

        recipients = [
            node.get("Recipient")
            for node in _query(
                assertion,
                "./saml:Subject/saml:SubjectConfirmation[@Method='%s']/saml:SubjectConfirmationData"
                % OneLogin_Saml2_Constants.CM_BEARER,
            )
        ]
        if expected not in recipients:
            raise MalformedResponse(
                f"No bearer SubjectConfirmation addressed to {expected!r} (got {recipients})"
            )

    def _verify_time_window(self, assertion, now: int) -> int | None:
        """Check every NotBefore/NotOnOrAfter. Returns the earliest expiry, if any."""
        skew = self.trust.clock_skew_seconds
        windows = _query(assertion, "./saml:Conditions") + _query(
            assertion,
            "./saml:Subject/saml:SubjectConfirmation/saml:SubjectConfirmationData",
        )

        earliest_expiry = None
        for node in windows:
            not_before = node.get("NotBefore")
            if not_before and now < _parse_time(not_before) - skew:
                raise Expired(f"Assertion not yet valid (NotBefore {not_before})")

            not_on_or_after = node.get("NotOnOrAfter")
            if not_on_or_after:
                expiry = _parse_time(not_on_or_after)
                if now > expiry + skew:
                    raise Expired(f"Assertion expired (NotOnOrAfter {not_on_or_after})")
                if earliest_expiry is None or expiry < earliest_expiry:
                    earliest_expiry = expiry

        return earliest_expiry

    def _verify_audience(self, assertion):
        if not self.trust.validate_audience:
            return
        restrictions = _query(assertion, "./saml:Conditions/saml:AudienceRestriction")
        if not restrictions:
            return
        audiences = [_text(a) for a in _query(assertion, "./saml:Conditions/saml:AudienceRestriction/saml:Audience")]
        if self.trust.sp_entity_id not in audiences:
            raise AudienceMismatch(f"SP {self.trust.sp_entity_id!r} not in audiences {audiences}")

    @staticmethod
    def _extract_claims(assertion) -> NormalizedClaims:
        name_ids = _query(assertion, "./saml:Subject/saml:NameID")
        subject = _text(name_ids[0]) if name_ids else ""
        if not subject:
            raise MalformedResponse("Assertion has no NameID")

        attributes: dict[str, list[str]] = {}
        for attribute in _query(assertion, "./saml:AttributeStatement/saml:Attribute"):
            name = attribute.get("Name")
            if not name:
                continue
            values = [_text(v) for v in _query(attribute, "./saml:AttributeValue")]
            attributes.setdefault(name, []).extend(v for v in values if v)

        def first(claim: str) -> str | None:
            for name in CLAIM_ATTRIBUTES[claim]:
                if attributes.get(name):
                    return attributes[name][0]
            return None

        groups = []
        for name in CLAIM_ATTRIBUTES["groups"]:
            if attributes.get(name):
                groups = list(attributes[name])
                break

        statements = _query(assertion, "./saml:AuthnStatement")
        return NormalizedClaims(
            subject=subject,
            given_name=first("given_name"),
            family_name=first("family_name"),
            display_name=first("display_name"),
            groups=groups,
            assertion_id=assertion.get("ID"),
            session_index=statements[0].get("SessionIndex") if statements else None,
            name_id_format=name_ids[0].get("Format"),
            attributes=attributes,
        )
