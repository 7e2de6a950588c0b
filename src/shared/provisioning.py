"""
Enterprise application provisioning in a customer tenant.

After a tenant administrator grants consent, the operator's multi-tenant
application registers its service principal inside the *customer's* directory.
Authentication uses the operator's own client id and secret against the
customer's tenant authority, so no per-customer secret is needed up front.
"""
import logging
import os

from azure.core.exceptions import ClientAuthenticationError
from msgraph_beta.generated.models.o_data_errors.o_data_error import ODataError

from shared.auth import classify_auth_error, get_graph_client, get_operator_credentials
from shared.errors import ProvisioningFailed
from shared.graph_client import (
    _run_async,
    create_service_principal_sdk,
    get_service_principal_sdk,
    odata_error_code,
)

DEFAULT_TIMEOUT_SECONDS = 30
log = logging.getLogger(__name__)


class ApplicationProvisioner:
    def __init__(self, operator_client_id: str, operator_secret: str,
                 timeout: float = DEFAULT_TIMEOUT_SECONDS,
                 client_factory=get_graph_client):
        self.operator_client_id = operator_client_id
        self._operator_secret = operator_secret
        self.timeout = timeout
        self._client_factory = client_factory

    @classmethod
    def from_env(cls) -> "ApplicationProvisioner":
        client_id, secret = get_operator_credentials()
        timeout = float(os.environ.get("PROVISIONING_TIMEOUT_SECONDS", DEFAULT_TIMEOUT_SECONDS))
        return cls(client_id, secret, timeout)

    def create_enterprise_application(
        self,
        tenant_id: str,
        application_client_id: str,
        display_name: str,
        customer_metadata: dict | None = None,
    ) -> dict:
        """
        Ensure a service principal for `application_client_id` exists in
        `tenant_id` and return {"id": <appId>, "objectId": <service principal id>}.

        Idempotent: an existing service principal is returned as-is, and a
        duplicate-creation response from Graph is reconciled by re-reading.
        Raises ProvisioningFailed with a classified `kind` on any failure,
        including the timeout bound on token exchange + directory writes.
        """
        if not tenant_id or not application_client_id:
            raise ProvisioningFailed(
                "invalid_request", "Tenant and application client id are required."
            )

        metadata = customer_metadata or {}
        notes = (f"Provisioned for customer {metadata.get('customerId', '')} "
                 f"({metadata.get('contactEmail') or 'no contact'})").strip()

        client = self._client_factory(tenant_id, self.operator_client_id, self._operator_secret)

        async def _provision():
            existing = await get_service_principal_sdk(client, application_client_id)
            if existing:
                log.info("Service principal already present in tenant %s", tenant_id)
                return existing
            return await create_service_principal_sdk(
                client, application_client_id, display_name, notes
            )

        try:
            sp = _run_async(_provision(), timeout=self.timeout)
        except TimeoutError as exc:
            raise ProvisioningFailed(
                "timeout",
                f"Timed out after {self.timeout:g}s provisioning tenant {tenant_id}.",
                detail=str(exc),
            ) from exc
        except ClientAuthenticationError as exc:
            raise classify_auth_error(exc, tenant_id) from exc
        except ODataError as exc:
            raise _classify_graph_error(exc, tenant_id) from exc

        object_id = sp.get("id")
        if not object_id:
            raise ProvisioningFailed(
                "graph_error",
                f"Service principal response for tenant {tenant_id} had no object id.",
            )
        log.info("Enterprise application %s provisioned in tenant %s (sp=%s)",
                 application_client_id, tenant_id, object_id)
        return {"id": sp.get("app_id") or application_client_id, "objectId": object_id}


def _classify_graph_error(exc: ODataError, tenant_id: str) -> ProvisioningFailed:
    code = odata_error_code(exc) or ""
    detail = getattr(getattr(exc, "error", None), "message", None) or str(exc)
    if "AADSTS" in detail:
        return classify_auth_error(RuntimeError(detail), tenant_id)
    status = getattr(exc, "response_status_code", None)
    if status == 403 or code == "Authorization_RequestDenied":
        return ProvisioningFailed(
            "insufficient_privileges",
            f"Insufficient privileges to create the enterprise application in tenant {tenant_id}.",
            detail=detail,
        )
    if status == 401:
        return ProvisioningFailed(
            "auth_failed", f"Authentication failed for tenant {tenant_id}.", detail=detail
        )
    return ProvisioningFailed(
        "graph_error",
        f"Directory rejected the enterprise application request for tenant {tenant_id}.",
        detail=f"{code}: {detail}",
    )
