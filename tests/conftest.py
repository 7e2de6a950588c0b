"""Root conftest.py — shared pytest fixtures for the tenant-posture test suite."""
from unittest.mock import MagicMock

import pytest


# ── Environment variables ──────────────────────────────────────────────────────

@pytest.fixture
def mock_env(monkeypatch):
    monkeypatch.setenv("KEY_VAULT_URL", "https://fake-kv.vault.azure.net")
    monkeypatch.setenv("MSSQL_CONNECTION", "Driver={ODBC Driver 18};Server=fake;")
    monkeypatch.setenv("AZURE_CLIENT_ID", "99999999-9999-9999-9999-999999999999")
    monkeypatch.setenv("AZURE_CLIENT_SECRET", "operator-secret")
    monkeypatch.setenv("CONSENT_REDIRECT_URI", "https://portal.example.com/api/consent-callback")
    monkeypatch.setenv("CONSENT_STATE_KEY", "test-signing-key")


# ── SQL / pyodbc ───────────────────────────────────────────────────────────────

@pytest.fixture
def mock_cursor():
    cursor = MagicMock()
    cursor.description = [("col1",)]
    cursor.fetchall.return_value = []
    cursor.fetchone.return_value = None
    return cursor


@pytest.fixture
def mock_connection(mock_cursor):
    conn = MagicMock()
    conn.cursor.return_value = mock_cursor
    return conn


# ── Azure Key Vault ────────────────────────────────────────────────────────────

@pytest.fixture
def mock_secret_client():
    client = MagicMock()
    secret = MagicMock()
    secret.value = "fake-secret"
    client.get_secret.return_value = secret
    return client


# ── Customer store ─────────────────────────────────────────────────────────────

class FakeCustomerStore:
    """In-memory stand-in for CustomerStore that merges credentials the same way."""

    def __init__(self, customers=None):
        self.customers = {c["id"]: dict(c) for c in (customers or [])}
        self.updates = []

    def get_customer(self, customer_id):
        customer = self.customers.get(customer_id)
        return dict(customer) if customer else None

    def update_customer(self, customer_id, partial):
        current = self.customers[customer_id]
        credentials = dict(current.get("credentials") or {})
        credentials.update(partial.get("credentials") or {})
        current["credentials"] = credentials
        if partial.get("status"):
            current["status"] = partial["status"]
        self.updates.append((customer_id, partial))
        return dict(current)


@pytest.fixture
def fake_store(sample_customer):
    return FakeCustomerStore([sample_customer])


# ── Sample data ───────────────────────────────────────────────────────────────

@pytest.fixture
def sample_customer():
    return {
        "id": "cust-001",
        "tenantId": "11111111-1111-1111-1111-111111111111",
        "tenantDomain": "acme.onmicrosoft.com",
        "tenantName": "Acme Corp",
        "contactEmail": "it@acme.example",
        "status": "pending",
        "credentials": {"kvSecretName": "cust-001-secret"},
    }


@pytest.fixture
def sample_secure_score():
    return {
        "createdDateTime": "2026-02-22T00:00:00Z",
        "currentScore": 72.5,
        "maxScore": 100.0,
        "licensedUserCount": 500,
        "activeUserCount": 450,
        "controlScores": [
            {
                "controlName": "MFARegistrationV2",
                "controlCategory": "Identity",
                "score": 9.0,
                "description": "MFA registration completed",
            },
            {
                "controlName": "AdminMFAV2",
                "controlCategory": "Identity",
                "score": 2.0,
            },
        ],
    }


@pytest.fixture
def sample_profiles():
    return [
        {
            "id": "MFARegistrationV2",
            "controlName": "MFARegistrationV2",
            "title": "Ensure all users can complete MFA",
            "maxScore": 10.0,
            "rank": 3,
            "actionType": "Config",
            "remediationImpact": "Users are prompted to register for MFA",
            "userImpact": "Moderate",
            "implementationCost": "Low",
            "threats": ["Account breach"],
        },
    ]
