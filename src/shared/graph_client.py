"""
Microsoft Graph API client — directory writes & Secure Score reads.

Directory writes (service principal lookup/creation in a customer tenant) go
through the msgraph-beta-sdk so authentication is handled by the azure-identity
credential bound to the customer's tenant authority. Secure Score, control
profile and license reads use raw v1.0 HTTP with retry logic and exponential
backoff for 429 / 5xx responses.
"""
import asyncio
import concurrent.futures
import logging
from typing import Any, Generator

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from msgraph_beta import GraphServiceClient
from msgraph_beta.generated.models.o_data_errors.o_data_error import ODataError
from msgraph_beta.generated.models.service_principal import ServicePrincipal

GRAPH_BASE = "https://graph.microsoft.com/v1.0"
log        = logging.getLogger(__name__)

SERVICE_PRINCIPAL_TAGS = ["WindowsAzureActiveDirectoryIntegratedApp", "M365Assessment"]
_DUPLICATE_CODES = {"Request_MultipleObjectsWithSameKeyValue", "ObjectConflict"}


# ═════════════════════════════════════════════════════════════════════════════
# Async-to-sync bridge
# Azure Functions v1 programming model is synchronous. The Graph SDK is async.
# We run SDK coroutines in a dedicated thread with its own event loop.
# ═════════════════════════════════════════════════════════════════════════════

_executor = concurrent.futures.ThreadPoolExecutor(max_workers=4)


def _run_async(coro, timeout: float | None = None) -> Any:
    """
    Run an async coroutine from synchronous code, safe in any context.
    With a timeout, raises TimeoutError once it elapses.
    """
    async def _bounded():
        return await asyncio.wait_for(coro, timeout)

    future = _executor.submit(asyncio.run, _bounded() if timeout else coro)
    try:
        return future.result(timeout=timeout + 1 if timeout else None)
    except (asyncio.TimeoutError, concurrent.futures.TimeoutError) as exc:
        raise TimeoutError(f"Graph call exceeded {timeout}s") from exc


def _model_to_dict(obj) -> dict:
    """Convert a msgraph model object to a plain dict, handling None fields."""
    if obj is None:
        return {}
    if isinstance(obj, dict):
        return obj
    try:
        # msgraph models expose additional_data and backing_store
        result = {}
        for key in dir(obj):
            if key.startswith("_") or key in ("additional_data", "backing_store",
                                                "odata_type", "serialize",
                                                "create_from_discriminator_value"):
                continue
            try:
                val = getattr(obj, key)
                if callable(val):
                    continue
                if val is not None:
                    result[key] = val
            except Exception:
                continue
        # Merge any additional_data (Graph SDK stashes unknown props here)
        if hasattr(obj, "additional_data") and obj.additional_data:
            result.update(obj.additional_data)
        return result
    except Exception:
        return {}


def odata_error_code(exc: BaseException) -> str | None:
    error = getattr(exc, "error", None)
    return getattr(error, "code", None)


def is_not_found(exc: BaseException) -> bool:
    return (getattr(exc, "response_status_code", None) == 404
            or odata_error_code(exc) == "Request_ResourceNotFound")


def is_duplicate(exc: BaseException) -> bool:
    if getattr(exc, "response_status_code", None) == 409:
        return True
    if odata_error_code(exc) in _DUPLICATE_CODES:
        return True
    error = getattr(exc, "error", None)
    message = (getattr(error, "message", None) or "").lower()
    return "already exists" in message


# ═════════════════════════════════════════════════════════════════════════════
# Service principals — SDK-based
# ═════════════════════════════════════════════════════════════════════════════

async def get_service_principal_sdk(client: GraphServiceClient, app_id: str) -> dict | None:
    """Return the service principal registered for `app_id`, or None if absent."""
    try:
        result = await client.service_principals_with_app_id(app_id).get()
    except ODataError as e:
        if is_not_found(e):
            return None
        raise
    return _model_to_dict(result) if result else None


async def create_service_principal_sdk(
    client: GraphServiceClient, app_id: str, display_name: str, notes: str | None = None
) -> dict:
    """
    Create the service principal (enterprise application) for `app_id`.
    An "already exists" response is treated as success and the existing
    object is returned instead.
    """
    body = ServicePrincipal(
        app_id=app_id,
        display_name=display_name,
        notes=notes,
        tags=list(SERVICE_PRINCIPAL_TAGS),
    )
    try:
        result = await client.service_principals.post(body)
    except ODataError as e:
        if not is_duplicate(e):
            raise
        log.info("Service principal for %s already exists, reconciling", app_id)
        existing = await get_service_principal_sdk(client, app_id)
        if existing is None:
            raise
        return existing
    return _model_to_dict(result)


# ═════════════════════════════════════════════════════════════════════════════
# Raw-HTTP helpers (Secure Score v1.0 endpoints)
# ═════════════════════════════════════════════════════════════════════════════

def _session() -> requests.Session:
    session = requests.Session()
    retry = Retry(
        total=4,
        backoff_factor=1,
        status_forcelist=[429, 500, 502, 503, 504],
        allowed_methods=["GET"],
        respect_retry_after_header=True,
    )
    session.mount("https://", HTTPAdapter(max_retries=retry))
    return session


def _get(url: str, token: str, timeout: float = 30) -> dict:
    resp = _session().get(
        url,
        headers={"Authorization": f"Bearer {token}"},
        timeout=timeout,
    )
    resp.raise_for_status()
    return resp.json()


def _paginate(url: str, token: str, timeout: float = 30) -> Generator[dict, None, None]:
    """Follow @odata.nextLink pagination and yield every item."""
    while url:
        data = _get(url, token, timeout)
        yield from data.get("value", [])
        url = data.get("@odata.nextLink")


def get_latest_secure_score(token: str, timeout: float = 30) -> dict | None:
    """Return the newest daily Secure Score snapshot, or None if the tenant has none."""
    data = _get(f"{GRAPH_BASE}/security/secureScores?$top=1", token, timeout)
    items = data.get("value", [])
    return items[0] if items else None


def get_control_profiles(token: str, timeout: float = 30) -> list[dict]:
    """Return the full Secure Score control profile catalog for this tenant."""
    url = f"{GRAPH_BASE}/security/secureScoreControlProfiles"
    return list(_paginate(url, token, timeout))


def get_subscribed_skus(token: str, timeout: float = 30) -> list[dict]:
    """Return the tenant's commercial subscriptions (license SKUs)."""
    return list(_paginate(f"{GRAPH_BASE}/subscribedSkus", token, timeout))
