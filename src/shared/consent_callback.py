"""
Admin-consent callback processing.

One pass per request:

    ReceivingRedirect -> ValidatingInput -> Rejected(error)
                                         -> Provisioning -> Provisioned
                                                         -> PartiallyFailed(error)

Validation and lookup failures are terminal and write nothing. Once the
customer is known and consent was confirmed, the customer record is always
written: consentGranted is persisted even when provisioning fails, with
provisioningError set as the signal for an operator-triggered retry.
"""
import json
import logging
import os
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from urllib.parse import parse_qsl, urlencode

from shared.errors import (
    AssessmentError,
    CustomerNotFound,
    InputRejected,
    ProviderDenied,
    ProvisioningFailed,
)
from shared.state_codec import CorrelationState, DecodeFailure, StateCodec

log = logging.getLogger(__name__)

DEFAULT_RESULT_PATH = "/consent-result"
CALLBACK_PARAMS = ("code", "state", "tenant", "admin_consent", "error", "error_description")
_GUID_RE = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE
)

# Provider error code -> message safe to show to the administrator
_PROVIDER_MESSAGES = {
    "access_denied":      "Administrator consent was declined.",
    "consent_required":   "Administrator consent is required to continue.",
    "invalid_request":    "The consent request was rejected by the identity provider.",
    "unauthorized_client": "The application is not allowed to request consent in this tenant.",
}
_DECODE_MESSAGES = {
    "empty":          "Consent state is missing from the callback.",
    "expired":        "The consent link has expired. Request a new consent link.",
    "missing_fields": "Consent state is incomplete. Request a new consent link.",
}
_INVALID_STATE_MESSAGE = "Consent state could not be verified. Request a new consent link."


@dataclass
class ConsentResult:
    status_code: int
    status: str                      # success | partial | error
    message: str
    redirect_url: str
    data: dict = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return self.status == "success"

    def to_body(self) -> dict:
        body = {
            "success": self.success,
            "status": self.status,
            "message": self.message,
            "redirectUrl": self.redirect_url,
        }
        if self.data:
            body["data"] = self.data
        return body


def normalize_params(method: str, query: dict | None, body: bytes | str | None,
                     content_type: str | None = None) -> dict:
    """
    Merge a GET query string or a POST body (JSON or form-encoded) into one
    parameter map holding only the known callback keys as stripped strings.
    """
    raw: dict = {}
    if (method or "").upper() == "POST":
        text = body.decode("utf-8", errors="replace") if isinstance(body, bytes) else (body or "")
        if text.strip():
            parsed = None
            if "form" not in (content_type or "").lower():
                try:
                    parsed = json.loads(text)
                except ValueError:
                    parsed = None
            if not isinstance(parsed, dict):
                parsed = dict(parse_qsl(text, keep_blank_values=True))
            raw = parsed
    else:
        raw = dict(query or {})

    params = {}
    for key in CALLBACK_PARAMS:
        value = raw.get(key)
        if value is None or isinstance(value, (dict, list)):
            continue
        value = str(value).strip()
        if value:
            params[key] = value
    return params


def _customer_label(customer: dict) -> str:
    return (customer.get("tenantName") or customer.get("tenantDomain")
            or str(customer.get("id", "")))


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class ConsentCallbackHandler:
    def __init__(self, store, provisioner, codec: StateCodec,
                 result_path: str = DEFAULT_RESULT_PATH, clock=_now_iso):
        self.store = store
        self.provisioner = provisioner
        self.codec = codec
        self.result_path = result_path
        self._clock = clock

    @classmethod
    def from_env(cls, store, provisioner) -> "ConsentCallbackHandler":
        return cls(
            store,
            provisioner,
            StateCodec.from_env(),
            os.environ.get("CONSENT_RESULT_PATH", DEFAULT_RESULT_PATH),
        )

    # ── Redirect targets ──────────────────────────────────────────────────────

    def _redirect(self, status: str, message: str, customer: str | None = None,
                  app_id: str | None = None) -> str:
        query = {"status": status, "message": message}
        if customer:
            query["customer"] = customer
        if app_id:
            query["appId"] = app_id
        return f"{self.result_path}?{urlencode(query)}"

    def _rejected(self, err: AssessmentError, data: dict | None = None) -> ConsentResult:
        return ConsentResult(
            status_code=err.status_code,
            status="error",
            message=err.message,
            redirect_url=self._redirect("error", err.message),
            data={"reason": err.reason, **(data or {})},
        )

    # ── States ────────────────────────────────────────────────────────────────

    def handle(self, params: dict) -> ConsentResult:
        try:
            state = self._validate(params)
        except ProviderDenied as err:
            return self._rejected(err, {"providerError": err.provider_error})
        except InputRejected as err:
            return self._rejected(err)

        customer = self.store.get_customer(state.customer_id)
        if not customer:
            log.warning("Consent callback for unknown customer %s", state.customer_id)
            return self._rejected(CustomerNotFound("Customer not found for this consent request."))

        return self._provision(customer, state, params)

    def _validate(self, params: dict) -> CorrelationState:
        error = params.get("error")
        if error:
            log.warning("Provider reported consent error %s: %s",
                        error, params.get("error_description", ""))
            message = _PROVIDER_MESSAGES.get(
                error, "The identity provider reported a consent failure."
            )
            raise ProviderDenied(message, provider_error=error,
                                 detail=params.get("error_description"))

        admin_consent = params.get("admin_consent", "").lower() == "true"
        if not params.get("code") and not admin_consent:
            raise InputRejected("Missing authorization code or admin consent confirmation.")

        decoded = self.codec.decode(params.get("state"))
        if isinstance(decoded, DecodeFailure):
            log.warning("Rejected consent state: %s", decoded.reason)
            raise InputRejected(_DECODE_MESSAGES.get(decoded.reason, _INVALID_STATE_MESSAGE))
        return decoded

    def _provision(self, customer: dict, state: CorrelationState, params: dict) -> ConsentResult:
        label = _customer_label(customer)
        # The provider returns the tenant GUID; state may hold a domain instead.
        returned_tenant = params.get("tenant", "")
        tenant_id = returned_tenant if _GUID_RE.match(returned_tenant) else state.tenant_id
        existing = customer.get("credentials") or {}
        granted_at = self._clock()

        try:
            if (existing.get("servicePrincipalId")
                    and existing.get("clientId") == state.application_client_id
                    and not existing.get("provisioningError")):
                log.info("Customer %s already provisioned, recording consent only",
                         state.customer_id)
                app = {"id": existing.get("applicationId") or state.application_client_id,
                       "objectId": existing["servicePrincipalId"]}
            else:
                app = self.provisioner.create_enterprise_application(
                    tenant_id=tenant_id,
                    application_client_id=state.application_client_id,
                    display_name=f"M365 Security Assessment - {label}",
                    customer_metadata={
                        "customerId": state.customer_id,
                        "tenantName": customer.get("tenantName"),
                        "tenantDomain": customer.get("tenantDomain"),
                        "contactEmail": customer.get("contactEmail"),
                    },
                )
        except Exception as exc:
            return self._partially_failed(customer, state, tenant_id, granted_at, exc)

        self.store.update_customer(state.customer_id, {
            "status": "active",
            "credentials": {
                "applicationId": app["id"],
                "clientId": state.application_client_id,
                "servicePrincipalId": app["objectId"],
                "tenantId": tenant_id,
                "permissions": sorted(state.permissions),
                "consentGranted": True,
                "consentGrantedAt": granted_at,
                "provisioningError": None,
                "provisioningErrorKind": None,
            },
        })
        log.info("Consent recorded and application provisioned for customer %s",
                 state.customer_id)

        message = "Consent granted and enterprise application registered."
        return ConsentResult(
            status_code=200,
            status="success",
            message=message,
            redirect_url=self._redirect("success", message, label, app["id"]),
            data={
                "customerId": state.customer_id,
                "customerName": label,
                "enterpriseAppId": app["id"],
                "servicePrincipalId": app["objectId"],
                "consentGranted": True,
            },
        )

    def _partially_failed(self, customer: dict, state: CorrelationState, tenant_id: str,
                          granted_at: str, exc: Exception) -> ConsentResult:
        if isinstance(exc, ProvisioningFailed):
            failure = exc
        else:
            failure = ProvisioningFailed(
                "graph_error",
                f"Enterprise application creation failed for tenant {tenant_id}.",
                detail=str(exc),
            )
        log.error("Provisioning failed for customer %s (%s): %s",
                  state.customer_id, failure.kind, failure.detail or failure.message)

        # Consent did succeed; that fact must survive the provisioning failure.
        self.store.update_customer(state.customer_id, {
            "credentials": {
                "clientId": state.application_client_id,
                "tenantId": tenant_id,
                "permissions": sorted(state.permissions),
                "consentGranted": True,
                "consentGrantedAt": granted_at,
                "provisioningError": failure.message,
                "provisioningErrorKind": failure.kind,
            },
        })

        message = "Consent granted but enterprise application creation failed."
        label = _customer_label(customer)
        return ConsentResult(
            status_code=failure.status_code,
            status="partial",
            message=message,
            redirect_url=self._redirect("partial", message, label),
            data={
                "reason": failure.reason,
                "kind": failure.kind,
                "details": failure.message,
                "customerId": state.customer_id,
                "consentGranted": True,
            },
        )
