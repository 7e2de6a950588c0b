"""
Secure Score retrieval for a consented customer tenant.

The raw score (authoritative) and the control profile catalog (best-effort)
are fetched concurrently with the customer's stored credentials. A failed
profile fetch degrades enrichment instead of failing the call.
"""
import concurrent.futures
import logging
import os

import requests

from shared.auth import get_tenant_token
from shared.enrichment import enrich
from shared.errors import CredentialsMissing, UpstreamUnavailable
from shared.graph_client import get_control_profiles, get_latest_secure_score, get_subscribed_skus

DEFAULT_TIMEOUT_SECONDS = 30
log = logging.getLogger(__name__)


def _timeout() -> float:
    return float(os.environ.get("GRAPH_TIMEOUT_SECONDS", DEFAULT_TIMEOUT_SECONDS))


def _token(tenant_id: str, client_id: str, client_secret: str, timeout: float) -> str:
    if not client_secret:
        raise CredentialsMissing(f"No client secret is stored for tenant {tenant_id}.")
    if not client_id:
        raise CredentialsMissing(f"No client id is stored for tenant {tenant_id}.")
    try:
        return get_tenant_token(tenant_id, client_id, client_secret, timeout=timeout)
    except requests.RequestException as exc:
        raise UpstreamUnavailable(
            f"Could not authenticate to tenant {tenant_id}.", detail=str(exc)
        ) from exc


def _profiles_best_effort(token: str, tenant_id: str, timeout: float) -> list[dict]:
    try:
        return get_control_profiles(token, timeout)
    except Exception as exc:
        log.warning("Control profiles unavailable for tenant %s: %s", tenant_id, exc)
        return []


def get_score(tenant_id: str, client_id: str, client_secret: str,
              timeout: float | None = None) -> dict:
    """
    Return {"raw": <latest secureScore>, "profiles": [<controlProfile>, ...]}.

    Raises CredentialsMissing when no secret is stored and UpstreamUnavailable
    when authentication or the raw score fetch fails.
    """
    timeout = _timeout() if timeout is None else timeout
    token = _token(tenant_id, client_id, client_secret, timeout)

    with concurrent.futures.ThreadPoolExecutor(max_workers=2) as pool:
        raw_future = pool.submit(get_latest_secure_score, token, timeout)
        profiles_future = pool.submit(_profiles_best_effort, token, tenant_id, timeout)
        try:
            raw = raw_future.result()
        except Exception as exc:
            raise UpstreamUnavailable(
                f"Secure Score is unavailable for tenant {tenant_id}.", detail=str(exc)
            ) from exc
        profiles = profiles_future.result()

    if not raw:
        raise UpstreamUnavailable(f"No Secure Score data available for tenant {tenant_id}.")
    log.info("Fetched Secure Score for tenant %s (%d controls, %d profiles)",
             tenant_id, len(raw.get("controlScores") or []), len(profiles))
    return {"raw": raw, "profiles": profiles}


def build_score_report(raw: dict, profiles: list[dict]) -> dict:
    """Summary of a raw score with its enriched, display-ready controls."""
    current = raw.get("currentScore") or 0
    maximum = raw.get("maxScore") or 0
    return {
        "currentScore": current,
        "maxScore": maximum,
        "percentage": round(current / maximum * 100) if maximum else 0,
        "lastUpdated": raw.get("createdDateTime"),
        "licensedUserCount": raw.get("licensedUserCount"),
        "activeUserCount": raw.get("activeUserCount"),
        "controlScores": enrich(raw.get("controlScores") or [], profiles),
    }


def summarize_licenses(skus: list[dict]) -> dict:
    details = []
    for sku in skus:
        plans = sku.get("servicePlans") or []
        total = (sku.get("prepaidUnits") or {}).get("enabled") or 0
        consumed = sku.get("consumedUnits") or 0
        details.append({
            "skuId": sku.get("skuId"),
            "skuPartNumber": sku.get("skuPartNumber"),
            "servicePlanName": (plans[0].get("servicePlanName") if plans else None)
                               or sku.get("skuPartNumber"),
            "totalUnits": total,
            "assignedUnits": consumed,
            "capabilityStatus": sku.get("capabilityStatus") or "Unknown",
        })

    total = sum(d["totalUnits"] for d in details)
    assigned = sum(d["assignedUnits"] for d in details)
    return {
        "totalLicenses": total,
        "assignedLicenses": assigned,
        "availableLicenses": max(0, total - assigned),
        "utilizationPercentage": round(assigned / total * 100) if total else 0,
        "licenseDetails": details,
    }


def get_license_utilization(tenant_id: str, client_id: str, client_secret: str,
                            timeout: float | None = None) -> dict:
    timeout = _timeout() if timeout is None else timeout
    token = _token(tenant_id, client_id, client_secret, timeout)
    try:
        skus = get_subscribed_skus(token, timeout)
    except requests.RequestException as exc:
        raise UpstreamUnavailable(
            f"License information is unavailable for tenant {tenant_id}.", detail=str(exc)
        ) from exc
    return summarize_licenses(skus)
