"""
HTTP API — operator endpoints for onboarding and Secure Score retrieval.

Routes:
    POST /api/assessment/consent-url   — Build an admin-consent URL for a customer
    POST /api/assessment/secure-score  — Fetch and enrich a customer's Secure Score
"""
import json
import logging
import os
import sys

import azure.functions as func

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "../../"))

from shared.auth import resolve_client_secret
from shared.consent_url import build_consent_url, default_redirect_uri, resolve_permissions
from shared.errors import AssessmentError, CredentialsMissing, CustomerNotFound
from shared.secure_score import build_score_report, get_license_utilization, get_score
from shared.state_codec import StateCodec


def main(req: func.HttpRequest) -> func.HttpResponse:
    action = req.route_params.get("action", "").lower()
    log = logging.getLogger("http_api")

    try:
        body = req.get_json() if req.get_body() else {}
    except ValueError:
        body = {}
    if not isinstance(body, dict):
        body = {}

    dispatch = {
        "consent-url":  _handle_consent_url,
        "secure-score": _handle_secure_score,
    }

    handler = dispatch.get(action)
    if not handler:
        return _json_response(
            {"error": f"Unknown action: {action}",
             "available_actions": list(dispatch.keys())},
            status_code=404,
        )

    try:
        result = handler(body, log)
        return _json_response(result)
    except AssessmentError as e:
        log.warning("/assessment/%s failed (%s): %s", action, e.reason, e.detail or e.message)
        return _json_response({"error": e.message, "reason": e.reason},
                              status_code=e.status_code)
    except ValueError as e:
        return _json_response({"error": str(e)}, status_code=400)
    except Exception:
        log.exception("Unhandled error in /assessment/%s", action)
        return _json_response({"error": "Internal server error"}, status_code=500)


# ── Collaborators ─────────────────────────────────────────────────────────────

def _store():
    from shared.sql_client import CustomerStore
    return CustomerStore()


def _load_customer(customer_id: str) -> dict:
    customer = _store().get_customer(customer_id)
    if not customer:
        raise CustomerNotFound(f"Customer {customer_id} not found.")
    return customer


def _text_field(body: dict, key: str) -> str:
    value = body.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValueError(f"'{key}' must be a string")
    return value.strip()


# ── Handlers ──────────────────────────────────────────────────────────────────

def _handle_consent_url(body: dict, log: logging.Logger) -> dict:
    """Build the admin-consent URL from a stored customer or a manual client/tenant pair."""
    customer_id = _text_field(body, "customerId")
    client_id = _text_field(body, "clientId")
    tenant_id = _text_field(body, "tenantId")
    features = body.get("features")
    if features is not None and (not isinstance(features, list)
                                 or not all(isinstance(f, str) for f in features)):
        raise ValueError("'features' must be a list of feature names")
    if not customer_id:
        raise ValueError("'customerId' is required")

    redirect_uri = _text_field(body, "redirectUri") or default_redirect_uri()
    if not redirect_uri:
        raise ValueError("No redirect URI configured (CONSENT_REDIRECT_URI)")

    codec = StateCodec.from_env()
    operator_client_id = os.environ.get("AZURE_CLIENT_ID")
    if client_id and tenant_id:
        url = build_consent_url(codec, redirect_uri,
                                client_id=client_id, tenant_id=tenant_id,
                                customer_id=customer_id, features=features)
    else:
        customer = _load_customer(customer_id)
        url = build_consent_url(codec, redirect_uri, customer=customer,
                                client_id=operator_client_id, features=features)

    log.info("Built consent URL for customer %s", customer_id)
    return {
        "url": url,
        "customerId": customer_id,
        "permissions": sorted(resolve_permissions(features)),
    }


def _handle_secure_score(body: dict, log: logging.Logger) -> dict:
    """Return the customer's latest Secure Score with enriched controls."""
    customer_id = _text_field(body, "customerId")
    if not customer_id:
        raise ValueError("'customerId' is required")

    customer = _load_customer(customer_id)
    credentials = customer.get("credentials") or {}
    tenant_id = credentials.get("tenantId") or customer.get("tenantId")
    client_id = credentials.get("clientId")
    client_secret = resolve_client_secret(credentials)
    if not tenant_id:
        raise CredentialsMissing(f"Customer {customer_id} has no tenant identifier.")

    fetched = get_score(tenant_id, client_id, client_secret)
    report = build_score_report(fetched["raw"], fetched["profiles"])

    if body.get("includeLicenses"):
        try:
            report["licenses"] = get_license_utilization(tenant_id, client_id, client_secret)
        except AssessmentError as e:
            log.warning("License utilization unavailable for %s: %s", customer_id, e.message)
            report["licenses"] = None

    log.info("Secure Score for customer %s: %s/%s", customer_id,
             report["currentScore"], report["maxScore"])
    return {"customerId": customer_id, **report}


def _json_response(data: dict, status_code: int = 200) -> func.HttpResponse:
    """Return a JSON HTTP response with proper content type and date serialization."""
    return func.HttpResponse(
        body=json.dumps(data, default=str),
        status_code=status_code,
        mimetype="application/json",
    )
