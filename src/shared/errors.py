"""
Error taxonomy for the consent and secure-score paths.

Every error carries a user-safe message, the HTTP status the dispatcher should
return, and a status token (`error` / `partial`) for the presentation layer.
Raw provider messages are kept on `detail` for logging only.
"""


class AssessmentError(Exception):
    status_code = 500
    status = "error"
    reason = "internal_error"

    def __init__(self, message: str, detail: str | None = None):
        super().__init__(message)
        self.message = message
        self.detail = detail


class InputRejected(AssessmentError):
    """Malformed or missing callback parameters. No side effects."""
    status_code = 400
    reason = "invalid_input"


class ProviderDenied(AssessmentError):
    """The identity provider reported an explicit denial or error."""
    status_code = 400
    reason = "provider_denied"

    def __init__(self, message: str, provider_error: str, detail: str | None = None):
        super().__init__(message, detail)
        self.provider_error = provider_error


class CustomerNotFound(AssessmentError):
    status_code = 404
    reason = "customer_not_found"


class ProvisioningFailed(AssessmentError):
    """
    Application / service principal creation failed in the target tenant.
    `kind` is one of PROVISIONING_KINDS.
    """
    status_code = 500
    reason = "provisioning_failed"

    def __init__(self, kind: str, message: str, detail: str | None = None):
        super().__init__(message, detail)
        self.kind = kind


PROVISIONING_KINDS = (
    "not_consented",
    "invalid_client",
    "invalid_secret",
    "insufficient_privileges",
    "timeout",
    "auth_failed",
    "graph_error",
    "invalid_request",
)


class CredentialsMissing(AssessmentError):
    status_code = 409
    reason = "credentials_missing"


class UpstreamUnavailable(AssessmentError):
    status_code = 502
    reason = "upstream_unavailable"
