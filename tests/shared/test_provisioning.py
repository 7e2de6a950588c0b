"""Tests for shared.provisioning — service principal registration in a customer tenant."""
from unittest.mock import patch, MagicMock, AsyncMock
import pytest

from azure.core.exceptions import ClientAuthenticationError
from msgraph_beta.generated.models.o_data_errors.o_data_error import ODataError

from shared.errors import ProvisioningFailed
from shared.provisioning import ApplicationProvisioner

TENANT = "11111111-1111-1111-1111-111111111111"


def _odata_error(status=None, code=None, message=None):
    err = ODataError()
    err.response_status_code = status
    err.error = MagicMock(code=code, message=message)
    return err


def _client(lookup=None, created=None):
    client = MagicMock()
    client.service_principals_with_app_id.return_value.get = AsyncMock(**(lookup or {}))
    client.service_principals.post = AsyncMock(**(created or {}))
    return client


def _provisioner(client, timeout=5):
    factory = MagicMock(return_value=client)
    return ApplicationProvisioner("operator-app", "operator-secret", timeout, factory), factory


class TestCreateEnterpriseApplication:
    def test_uses_operator_identity_in_customer_tenant(self):
        client = _client(lookup={"return_value": {"id": "sp-1", "app_id": "app-1"}})
        provisioner, factory = _provisioner(client)

        provisioner.create_enterprise_application(TENANT, "app-1", "Assessment - Acme")

        factory.assert_called_once_with(TENANT, "operator-app", "operator-secret")

    def test_existing_principal_is_returned(self):
        client = _client(lookup={"return_value": {"id": "sp-1", "app_id": "app-1"}})
        provisioner, _ = _provisioner(client)

        result = provisioner.create_enterprise_application(TENANT, "app-1", "Assessment")

        assert result == {"id": "app-1", "objectId": "sp-1"}
        client.service_principals.post.assert_not_called()

    def test_creates_when_absent(self):
        client = _client(lookup={"side_effect": _odata_error(status=404)},
                         created={"return_value": {"id": "sp-new", "app_id": "app-1"}})
        provisioner, _ = _provisioner(client)

        result = provisioner.create_enterprise_application(
            TENANT, "app-1", "Assessment - Acme",
            customer_metadata={"customerId": "cust-001", "contactEmail": "it@acme.example"},
        )

        assert result == {"id": "app-1", "objectId": "sp-new"}
        body = client.service_principals.post.call_args[0][0]
        assert body.display_name == "Assessment - Acme"
        assert "cust-001" in body.notes

    def test_duplicate_is_reconciled(self):
        client = _client(
            lookup={"side_effect": [_odata_error(status=404), {"id": "sp-race"}]},
            created={"side_effect": _odata_error(status=409)},
        )
        provisioner, _ = _provisioner(client)

        result = provisioner.create_enterprise_application(TENANT, "app-1", "Assessment")
        assert result["objectId"] == "sp-race"

    @pytest.mark.parametrize("tenant,app", [("", "app-1"), (TENANT, "")])
    def test_invalid_request(self, tenant, app):
        provisioner, factory = _provisioner(_client())
        with pytest.raises(ProvisioningFailed) as exc:
            provisioner.create_enterprise_application(tenant, app, "Assessment")
        assert exc.value.kind == "invalid_request"
        factory.assert_not_called()

    def test_timeout(self):
        provisioner, _ = _provisioner(_client())
        with patch("shared.provisioning._run_async", side_effect=TimeoutError("slow")):
            with pytest.raises(ProvisioningFailed) as exc:
                provisioner.create_enterprise_application(TENANT, "app-1", "Assessment")
        assert exc.value.kind == "timeout"

    @pytest.mark.parametrize("message,kind", [
        ("AADSTS700016: Application not found in the directory", "not_consented"),
        ("AADSTS7000215: Invalid client secret provided", "invalid_secret"),
        ("AADSTS650057: Invalid resource", "invalid_client"),
        ("network unreachable", "auth_failed"),
    ])
    def test_authentication_errors_are_classified(self, message, kind):
        client = _client(lookup={"side_effect": ClientAuthenticationError(message=message)})
        provisioner, _ = _provisioner(client)

        with pytest.raises(ProvisioningFailed) as exc:
            provisioner.create_enterprise_application(TENANT, "app-1", "Assessment")
        assert exc.value.kind == kind

    def test_forbidden_is_insufficient_privileges(self):
        client = _client(lookup={"side_effect": _odata_error(
            status=403, code="Authorization_RequestDenied", message="Insufficient privileges")})
        provisioner, _ = _provisioner(client)

        with pytest.raises(ProvisioningFailed) as exc:
            provisioner.create_enterprise_application(TENANT, "app-1", "Assessment")
        assert exc.value.kind == "insufficient_privileges"

    def test_other_graph_error(self):
        client = _client(lookup={"side_effect": _odata_error(status=404)},
                         created={"side_effect": _odata_error(status=400, code="BadRequest",
                                                              message="Invalid value")})
        provisioner, _ = _provisioner(client)

        with pytest.raises(ProvisioningFailed) as exc:
            provisioner.create_enterprise_application(TENANT, "app-1", "Assessment")
        assert exc.value.kind == "graph_error"
        assert "BadRequest" in exc.value.detail

    def test_response_without_object_id(self):
        client = _client(lookup={"side_effect": _odata_error(status=404)},
                         created={"return_value": {}})
        provisioner, _ = _provisioner(client)

        with pytest.raises(ProvisioningFailed) as exc:
            provisioner.create_enterprise_application(TENANT, "app-1", "Assessment")
        assert exc.value.kind == "graph_error"


def test_from_env(mock_env, monkeypatch):
    monkeypatch.setenv("PROVISIONING_TIMEOUT_SECONDS", "12")
    provisioner = ApplicationProvisioner.from_env()
    assert provisioner.operator_client_id == "99999999-9999-9999-9999-999999999999"
    assert provisioner.timeout == 12.0
