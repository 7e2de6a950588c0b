"""
Admin-consent URL construction.

The permission set is drawn from a fixed catalog of read-only Microsoft Graph
application permissions grouped by assessment feature. Callers may toggle
feature groups by name; they can never inject arbitrary scopes.
"""
import logging
import os
import re
import time
from urllib.parse import urlencode

from shared.auth import GRAPH_SCOPE, LOGIN_URL
from shared.state_codec import CorrelationState, StateCodec

log = logging.getLogger(__name__)

GUID_RE = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE
)
PROVIDER_DEFAULT_DOMAINS = (".onmicrosoft.com", ".onmicrosoft.us")
ANY_ORGANIZATION_SEGMENT = "organizations"

# Feature group -> read-only application permissions. `core` is always granted.
PERMISSION_CATALOG = {
    "core": (
        "User.Read.All",
        "Directory.Read.All",
        "Organization.Read.All",
        "SecurityEvents.Read.All",
    ),
    "reports":          ("Reports.Read.All",),
    "policies":         ("Policy.Read.All",),
    "privilegedRoles":  ("RoleManagement.Read.Directory",),
    "riskIntelligence": ("IdentityRiskEvent.Read.All",),
    "compliance":       ("AuditLog.Read.All",),
}

DEFAULT_FEATURES = ("reports", "policies")


def resolve_permissions(features=None) -> frozenset[str]:
    """
    Return the permission set for the selected feature groups, always
    including `core`. Raises ValueError for names outside the catalog.
    """
    selected = DEFAULT_FEATURES if features is None else tuple(features)
    if not all(isinstance(f, str) for f in selected):
        raise ValueError("Permission features must be given by name")
    unknown = sorted(f for f in selected if f not in PERMISSION_CATALOG)
    if unknown:
        raise ValueError(f"Unknown permission feature(s): {', '.join(unknown)}")

    permissions = set(PERMISSION_CATALOG["core"])
    for feature in selected:
        permissions.update(PERMISSION_CATALOG[feature])
    return frozenset(permissions)


def authority_segment(tenant: str) -> str:
    """
    Pick the authorization endpoint segment for a tenant identifier.

    Tenant GUIDs and provider-default (*.onmicrosoft.com) domains resolve
    reliably and are used verbatim. Arbitrary custom domains may not be
    resolvable by the per-tenant endpoint, so they go through the tenant-agnostic
    `organizations` endpoint instead.
    """
    tenant = (tenant or "").strip()
    if GUID_RE.match(tenant):
        return tenant
    if tenant.lower().endswith(PROVIDER_DEFAULT_DOMAINS):
        return tenant
    log.info("Using '%s' consent endpoint for custom domain %s",
             ANY_ORGANIZATION_SEGMENT, tenant)
    return ANY_ORGANIZATION_SEGMENT


def customer_consent_target(customer: dict, default_client_id: str | None = None) -> tuple[str, str]:
    """Return (client_id, tenant) for a customer record, empty strings when unknown."""
    credentials = customer.get("credentials") or {}
    client_id = credentials.get("clientId") or default_client_id or ""
    tenant = customer.get("tenantId") or customer.get("tenantDomain") or ""
    return client_id, tenant


def build_consent_url(
    codec: StateCodec,
    redirect_uri: str,
    customer: dict | None = None,
    client_id: str | None = None,
    tenant_id: str | None = None,
    customer_id: str | None = None,
    features=None,
    now: float | None = None,
) -> str:
    """
    Compose the admin-consent URL for a customer record, or for a manually
    supplied client_id / tenant_id pair (with the customer_id the callback
    will correlate against).

    Returns an empty string when the client id, tenant or customer id is
    missing; a malformed authorization URL is never produced. Non-string
    identifiers raise ValueError.
    """
    if customer is not None:
        customer_id = str(customer.get("id") or "")
        client_id, tenant_id = customer_consent_target(customer, client_id)
    for name, value in (("client id", client_id), ("tenant", tenant_id),
                        ("customer id", customer_id)):
        if value is not None and not isinstance(value, str):
            raise ValueError(f"Consent {name} must be a string")
    customer_id = (customer_id or "").strip()
    client_id = (client_id or "").strip()
    tenant_id = (tenant_id or "").strip()
    if not client_id or not tenant_id or not customer_id or not redirect_uri:
        log.warning("Cannot build consent URL: client id, tenant or customer missing")
        return ""

    permissions = resolve_permissions(features)
    state = CorrelationState(
        customer_id=customer_id,
        application_client_id=client_id,
        tenant_id=tenant_id,
        permissions=permissions,
        issued_at=int(time.time() if now is None else now),
    )
    query = urlencode({
        "client_id":    client_id,
        "scope":        GRAPH_SCOPE,
        "redirect_uri": redirect_uri,
        "state":        codec.encode(state),
    })
    return f"{LOGIN_URL}/{authority_segment(tenant_id)}/v2.0/adminconsent?{query}"


def default_redirect_uri() -> str:
    return os.environ.get("CONSENT_REDIRECT_URI", "")
