"""
Cross-tenant authentication helpers.

Two identities are in play:
  - the operator's multi-tenant application (AZURE_CLIENT_ID + a secret from
    AZURE_CLIENT_SECRET or Key Vault), used against a *customer's* tenant
    authority to register the service principal there after admin consent;
  - per-customer credentials held in the customer store, used to read
    Secure Score data.

M365 GCC uses global endpoints (no change needed). Set GRAPH_NATIONAL_CLOUD=usgovernment
only for GCC High/DoD (uses login.microsoftonline.us and graph.microsoft.us).
"""
import logging
import os
import re

import requests
from azure.identity import AzureAuthorityHosts, ClientSecretCredential, DefaultAzureCredential
from azure.keyvault.secrets import SecretClient
from msgraph_beta import GraphServiceClient

from shared.errors import ProvisioningFailed

_kv_client: SecretClient | None = None
log = logging.getLogger(__name__)

# National cloud: commercial (default) or usgovernment (GCC / GCC High / DoD)
_GRAPH_CLOUD = os.environ.get("GRAPH_NATIONAL_CLOUD", "").strip().lower()
_IS_USGOV = _GRAPH_CLOUD in ("usgovernment", "usgov", "gcc", "gcc high", "dod")

LOGIN_URL = "https://login.microsoftonline.us" if _IS_USGOV else "https://login.microsoftonline.com"
GRAPH_RESOURCE = "https://graph.microsoft.us" if _IS_USGOV else "https://graph.microsoft.com"
GRAPH_SCOPE = f"{GRAPH_RESOURCE}/.default"
GRAPH_AUTHORITY = AzureAuthorityHosts.AZURE_PUBLIC_CLOUD if not _IS_USGOV else AzureAuthorityHosts.AZURE_GOVERNMENT

# AADSTS code -> (kind, message template)
_AADSTS_KINDS = {
    "700016":  ("not_consented",
                "Application not yet consented in tenant {tenant}. "
                "A tenant administrator must grant consent first."),
    "65001":   ("not_consented",
                "Application not yet consented in tenant {tenant}. "
                "A tenant administrator must grant consent first."),
    "650057":  ("invalid_client",
                "Invalid client credentials for tenant {tenant}. "
                "Check the application registration configuration."),
    "700027":  ("invalid_client",
                "Invalid client credentials for tenant {tenant}. "
                "Check the application registration configuration."),
    "7000215": ("invalid_secret",
                "Invalid or expired client secret used for tenant {tenant}."),
    "7000222": ("invalid_secret",
                "Invalid or expired client secret used for tenant {tenant}."),
    "70002":   ("invalid_secret",
                "Invalid or expired client secret used for tenant {tenant}."),
    "70008":   ("invalid_secret",
                "Invalid or expired client secret used for tenant {tenant}."),
}
_AADSTS_RE = re.compile(r"AADSTS(\d+)")


def _get_kv_client() -> SecretClient:
    global _kv_client
    if _kv_client is None:
        vault_url = os.environ["KEY_VAULT_URL"]
        _kv_client = SecretClient(vault_url=vault_url, credential=DefaultAzureCredential())
    return _kv_client


def get_operator_credentials() -> tuple[str, str]:
    """
    Return (client_id, client_secret) of the operator's multi-tenant application.
    The secret comes from AZURE_CLIENT_SECRET, or from the Key Vault secret named
    by OPERATOR_SECRET_NAME when the env var is not set.
    """
    client_id = os.environ["AZURE_CLIENT_ID"]
    secret = os.environ.get("AZURE_CLIENT_SECRET")
    if not secret:
        secret = _get_kv_client().get_secret(os.environ["OPERATOR_SECRET_NAME"]).value
    return client_id, secret


def resolve_client_secret(credentials: dict | None) -> str | None:
    """
    Return the client secret for a customer's stored credentials.
    A Key Vault reference (kvSecretName) wins over an inline clientSecret.
    """
    if not credentials:
        return None
    secret_name = credentials.get("kvSecretName")
    if secret_name:
        return _get_kv_client().get_secret(secret_name).value
    return credentials.get("clientSecret") or None


def get_tenant_token(tenant_id: str, client_id: str, client_secret: str,
                     timeout: float = 30) -> str:
    """
    Fetch an app-only Graph bearer token scoped to `tenant_id`.

    On failure raises requests.HTTPError whose message carries the provider's
    error code and description (AADSTS...), so callers can classify it.
    """
    url = f"{LOGIN_URL}/{tenant_id}/oauth2/v2.0/token"
    resp = requests.post(url, data={
        "grant_type": "client_credentials",
        "client_id": client_id,
        "client_secret": client_secret,
        "scope": GRAPH_SCOPE,
    }, timeout=timeout)
    if resp.status_code >= 400:
        try:
            body = resp.json()
        except ValueError:
            body = {}
        raise requests.HTTPError(
            f"{resp.status_code} {body.get('error', 'token_error')}: "
            f"{body.get('error_description', resp.reason)}",
            response=resp,
        )
    return resp.json()["access_token"]


def get_graph_client(tenant_id: str, client_id: str, client_secret: str) -> GraphServiceClient:
    """
    Build a Graph SDK client authenticated as `client_id` against the
    `tenant_id` authority. With the operator's credentials and a customer's
    tenant this is the cross-tenant, app-only identity.
    """
    credential = ClientSecretCredential(
        tenant_id=tenant_id,
        client_id=client_id,
        client_secret=client_secret,
        authority=GRAPH_AUTHORITY,
    )
    return GraphServiceClient(credentials=credential, scopes=[GRAPH_SCOPE])


def classify_auth_error(exc: BaseException, tenant_id: str) -> ProvisioningFailed:
    """Map an identity-provider error to a user-actionable ProvisioningFailed."""
    text = str(exc)
    match = _AADSTS_RE.search(text)
    if match and match.group(1) in _AADSTS_KINDS:
        kind, template = _AADSTS_KINDS[match.group(1)]
        return ProvisioningFailed(kind, template.format(tenant=tenant_id), detail=text)
    return ProvisioningFailed(
        "auth_failed", f"Authentication failed for tenant {tenant_id}.", detail=text
    )
