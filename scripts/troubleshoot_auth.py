"""
SAML SSO troubleshooting tool.

Systematically diagnoses common SAML login failures. Unlike the HTTP
callback, which only ever answers "Authentication failed", this tool shows
operators exactly which check rejected a response.

Usage:
    python scripts/troubleshoot_auth.py --check all
    python scripts/troubleshoot_auth.py --check response --saml-response response.b64
    python scripts/troubleshoot_auth.py --check connectivity
    python scripts/troubleshoot_auth.py --check config
"""

import argparse
import sys
import time
from datetime import datetime, timezone
from pathlib import Path

# Colors for terminal output
RED = "\033[91m"
GREEN = "\033[92m"
YELLOW = "\033[93m"
CYAN = "\033[96m"
RESET = "\033[0m"
BOLD = "\033[1m"


def header(text: str):
    print(f"\n{BOLD}{CYAN}{'='*60}")
    print(f"  {text}")
    print(f"{'='*60}{RESET}\n")


def ok(text: str):
    print(f"  {GREEN}✓{RESET} {text}")


def warn(text: str):
    print(f"  {YELLOW}⚠{RESET} {text}")


def fail(text: str):
    print(f"  {RED}✗{RESET} {text}")


def hint(text: str):
    print(f"    {CYAN}→ {text}{RESET}")


def load_trust(settings):
    from sso_portal.auth.errors import ConfigurationError
    from sso_portal.auth.trust import TrustConfiguration

    try:
        return TrustConfiguration.from_settings(settings)
    except ConfigurationError as e:
        fail(f"Trust configuration invalid: {e}")
        return None


# ──────────────────────────────────────────────
# CHECK 1: Configuration
# ──────────────────────────────────────────────
def check_config(settings):
    """Verify the SAML trust configuration loads and SP metadata is valid."""
    header("Check 1: Configuration")
    from sso_portal.auth.errors import ConfigurationError
    from sso_portal.auth.service_provider import ServiceProvider

    trust = load_trust(settings)
    if trust is None:
        hint("Set IDP_SSO_URL, IDP_ENTITY_ID, IDP_CERTIFICATE, SP_ENTITY_ID, "
             "SP_CERTIFICATE and SP_PRIVATE_KEY in .env or the environment")
        return 1

    ok(f"IdP entity ID = {trust.idp_entity_id}")
    ok(f"IdP SSO URL = {trust.idp_sso_url}")
    ok(f"SP entity ID = {trust.sp_entity_id}")
    ok(f"Callback (ACS) URL = {trust.callback_url}")
    ok(f"Clock skew tolerance = {trust.clock_skew_seconds}s")

    if trust.callback_url.startswith("http://"):
        warn("Callback URL is plain HTTP — most IdPs require HTTPS outside development")
    if not trust.want_assertions_signed and not trust.want_response_signed:
        warn("Neither assertions nor responses are required to be signed "
             "(at least one signature is still enforced)")
    if settings.token_secret.startswith("change-me"):
        warn("TOKEN_SECRET is the built-in default")
        hint("Set TOKEN_SECRET or store it in Vault under 'token_secret'")

    try:
        ServiceProvider(trust).generate_service_provider_metadata()
        ok("SP metadata generated and validated")
    except ConfigurationError as e:
        fail(str(e))
        return 1

    return 0


# ──────────────────────────────────────────────
# CHECK 2: Connectivity to the IdP
# ──────────────────────────────────────────────
def check_connectivity(settings):
    """Test that the IdP SSO endpoint answers."""
    header("Check 2: Connectivity")

    if not settings.idp_sso_url:
        fail("Cannot test connectivity — IDP_SSO_URL not set")
        return 1

    import httpx

    try:
        print("  Testing IdP SSO endpoint...")
        start = time.time()
        response = httpx.get(settings.idp_sso_url, timeout=10, follow_redirects=False)
        elapsed = time.time() - start
    except httpx.HTTPError as e:
        fail(f"Connection error: {e}")
        hint("Check network connectivity and firewall rules")
        return 1

    # Without a SAMLRequest most IdPs answer 4xx; reaching them is what matters
    if response.status_code >= 500:
        fail(f"IdP SSO endpoint returned {response.status_code} ({elapsed:.1f}s)")
        return 1
    ok(f"IdP SSO endpoint reachable — HTTP {response.status_code} ({elapsed:.1f}s)")
    return 0


# ──────────────────────────────────────────────
# CHECK 3: SAML Response analysis
# ──────────────────────────────────────────────
def check_response(settings, saml_response: str):
    """Run a captured SAMLResponse through the verifier and report the result."""
    header("Check 3: SAML Response Analysis")

    if not saml_response:
        warn("No response provided — use --saml-response <file> to analyze one")
        hint("Copy the SAMLResponse form field from browser DevTools > Network > callback")
        return 0

    path = Path(saml_response)
    if path.exists():
        saml_response = path.read_text().strip()

    from sso_portal.auth.assertion import AssertionVerifier
    from sso_portal.auth.errors import HandshakeError

    trust = load_trust(settings)
    if trust is None:
        return 1

    try:
        claims = AssertionVerifier(trust).verify(saml_response)
    except HandshakeError as e:
        fail(f"{type(e).__name__}: {e}")
        hints = {
            "InvalidSignature": "IdP certificate may have rotated — download the current one",
            "Expired": "Check server time (date -u) and CLOCK_SKEW_SECONDS",
            "IssuerMismatch": "IDP_ENTITY_ID must match the IdP's Issuer exactly",
            "AudienceMismatch": "SP_ENTITY_ID must match the audience configured at the IdP",
            "MalformedResponse": "Make sure the whole base64 form value was copied",
        }
        hint(hints.get(type(e).__name__, "See the server log for details"))
        return 1

    ok(f"Subject (NameID): {claims.subject}")
    ok(f"Name: {claims.given_name or '-'} {claims.family_name or '-'}")
    if claims.display_name:
        ok(f"Display name: {claims.display_name}")
    ok(f"Groups: {', '.join(claims.groups) or '(none)'}")
    ok(f"Attributes: {sorted(claims.attributes)}")
    ok(f"Checked at {datetime.now(timezone.utc).isoformat()}")
    return 0


# ──────────────────────────────────────────────
# CHECK 4: Vault connectivity
# ──────────────────────────────────────────────
def check_vault(settings):
    """Test Vault connectivity and secret access."""
    header("Check 4: Vault")

    if not settings.vault_enabled:
        warn("Vault is disabled (VAULT_ENABLED=false)")
        hint("Set VAULT_ENABLED=true to load SP_PRIVATE_KEY and TOKEN_SECRET from Vault")
        return 0

    if not settings.vault_token:
        fail("VAULT_TOKEN not set")
        hint("Export VAULT_TOKEN or add to .env")
        return 1

    import hvac
    from hvac.exceptions import VaultError

    client = hvac.Client(url=settings.vault_addr, token=settings.vault_token)
    if not client.is_authenticated():
        fail("Vault authentication failed")
        hint("Token may be expired — generate a new one")
        return 1
    ok(f"Vault authenticated at {settings.vault_addr}")

    try:
        secret = client.secrets.kv.v2.read_secret_version(path=settings.vault_secret_path)
    except VaultError as e:
        fail(f"Cannot read secret at '{settings.vault_secret_path}': {e}")
        hint(f"vault kv put secret/{settings.vault_secret_path} sp_private_key=@sp.key token_secret=...")
        return 1

    keys = list(secret["data"]["data"].keys())
    ok(f"Secret at '{settings.vault_secret_path}' accessible — keys: {keys}")
    for expected in ("sp_private_key", "token_secret"):
        if expected not in keys:
            warn(f"'{expected}' not stored in Vault — falling back to environment")
    return 0


# ──────────────────────────────────────────────
# Reference: common root causes
# ──────────────────────────────────────────────
def print_common_issues():
    """Print a reference guide for common SAML failures."""
    header("Reference: Common SAML Failures")

    problems = [
        (
            "InvalidSignature",
            "IdP signing certificate rotated, or the response was altered in transit",
            "Download the current certificate from the IdP and update IDP_CERTIFICATE",
        ),
        (
            "Expired",
            "Clock skew between this server and the IdP, or a stale browser POST",
            "Sync server time with NTP. Raise CLOCK_SKEW_SECONDS only slightly",
        ),
        (
            "IssuerMismatch",
            "IDP_ENTITY_ID does not match the Issuer the IdP sends",
            "Copy the entity ID from the IdP metadata verbatim",
        ),
        (
            "AudienceMismatch",
            "IdP application configured with a different SP entity ID",
            "Re-import /auth/metadata at the IdP or align SP_ENTITY_ID",
        ),
        (
            "Authentication failed after a valid response",
            "Two first-time logins for the same email raced, or the database is down",
            "Retry the login; check DATABASE_URL and database health",
        ),
    ]

    for problem, cause, fix in problems:
        print(f"  {RED}{BOLD}{problem}{RESET}")
        print(f"    Root cause: {cause}")
        print(f"    {CYAN}→ Fix: {fix}{RESET}")
        print()


# ──────────────────────────────────────────────
# Main
# ──────────────────────────────────────────────
def main(argv=None):
    parser = argparse.ArgumentParser(
        description="Diagnose SAML login issues in SSO Portal",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python scripts/troubleshoot_auth.py --check all
  python scripts/troubleshoot_auth.py --check response --saml-response response.b64
  python scripts/troubleshoot_auth.py --check connectivity
  python scripts/troubleshoot_auth.py --check vault
  python scripts/troubleshoot_auth.py --check reference
        """,
    )
    parser.add_argument(
        "--check",
        choices=["all", "config", "connectivity", "response", "vault", "reference"],
        default="all",
        help="Which check to run (default: all)",
    )
    parser.add_argument(
        "--saml-response",
        help="Base64 SAMLResponse, or a file containing one",
    )

    args = parser.parse_args(argv)

    print(f"\n{BOLD}SSO Portal — SAML Troubleshooter{RESET}")
    print(f"{'─'*50}")

    # Export .env so the Vault lookup (which reads os.environ) sees it too
    from dotenv import load_dotenv
    load_dotenv()

    from sso_portal.config import Settings

    settings = Settings()
    total_issues = 0

    if args.check in ("all", "config"):
        total_issues += check_config(settings)

    if args.check in ("all", "connectivity"):
        total_issues += check_connectivity(settings)

    if args.check in ("all", "response"):
        total_issues += check_response(settings, args.saml_response or "")

    if args.check in ("all", "vault"):
        total_issues += check_vault(settings)

    if args.check in ("all", "reference"):
        print_common_issues()

    # Summary
    header("Summary")
    if total_issues == 0:
        ok("All checks passed — no issues detected")
    else:
        fail(f"{total_issues} issue(s) found — review the hints above")

    return total_issues


if __name__ == "__main__":
    sys.exit(main())
