"""
HTTP trigger — admin-consent redirect target.

Routes:
    GET     /api/consent-callback   — provider redirect (query parameters)
    POST    /api/consent-callback   — form_post / JSON relay of the same parameters
    OPTIONS /api/consent-callback   — CORS preflight
"""
import json
import logging
import os
import sys

import azure.functions as func

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "../../"))

from shared.consent_callback import ConsentCallbackHandler, normalize_params

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, Authorization",
    "Access-Control-Max-Age": "86400",
}


def _build_handler() -> ConsentCallbackHandler:
    from shared.provisioning import ApplicationProvisioner
    from shared.sql_client import CustomerStore

    return ConsentCallbackHandler.from_env(CustomerStore(), ApplicationProvisioner.from_env())


def main(req: func.HttpRequest) -> func.HttpResponse:
    log = logging.getLogger("consent_callback")
    method = req.method.upper()

    if method == "OPTIONS":
        return func.HttpResponse(status_code=200, headers=CORS_HEADERS)
    if method not in ("GET", "POST"):
        return _json_response({"success": False, "error": "Method not allowed"}, 405)

    params = normalize_params(
        method, dict(req.params), req.get_body(), req.headers.get("Content-Type")
    )
    log.info("Consent callback received (%s, keys=%s)", method, sorted(params))

    try:
        result = _build_handler().handle(params)
    except Exception:
        log.exception("Unhandled error in consent callback")
        return _json_response({
            "success": False,
            "status": "error",
            "message": "Internal server error during consent processing.",
            "redirectUrl": "/consent-result?status=error&message=Internal+server+error",
        }, 500)

    log.info("Consent callback finished: %s (%d)", result.status, result.status_code)
    return _json_response(result.to_body(), result.status_code)


def _json_response(data: dict, status_code: int = 200) -> func.HttpResponse:
    return func.HttpResponse(
        json.dumps(data, default=str),
        status_code=status_code,
        mimetype="application/json",
        headers=CORS_HEADERS,
    )
