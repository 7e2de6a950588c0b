"""Tests for shared.secure_score — credentialed fetch, report building, license summary."""
from unittest.mock import patch
import pytest
import requests

from shared.errors import CredentialsMissing, UpstreamUnavailable
from shared.secure_score import (
    build_score_report,
    get_license_utilization,
    get_score,
    summarize_licenses,
)

TENANT = "11111111-1111-1111-1111-111111111111"


class TestGetScore:
    def test_returns_raw_and_profiles(self, sample_secure_score, sample_profiles):
        with patch("shared.secure_score.get_tenant_token", return_value="tok"), \
             patch("shared.secure_score.get_latest_secure_score", return_value=sample_secure_score), \
             patch("shared.secure_score.get_control_profiles", return_value=sample_profiles):
            result = get_score(TENANT, "app-1", "secret", timeout=5)

        assert result == {"raw": sample_secure_score, "profiles": sample_profiles}

    def test_profile_failure_degrades(self, sample_secure_score):
        with patch("shared.secure_score.get_tenant_token", return_value="tok"), \
             patch("shared.secure_score.get_latest_secure_score", return_value=sample_secure_score), \
             patch("shared.secure_score.get_control_profiles", side_effect=requests.HTTPError("503")):
            result = get_score(TENANT, "app-1", "secret", timeout=5)

        assert result["profiles"] == []

    def test_missing_secret(self):
        with pytest.raises(CredentialsMissing):
            get_score(TENANT, "app-1", None)

    def test_missing_client_id(self):
        with pytest.raises(CredentialsMissing):
            get_score(TENANT, None, "secret")

    def test_token_failure_is_upstream(self):
        with patch("shared.secure_score.get_tenant_token",
                   side_effect=requests.HTTPError("401 invalid_client")):
            with pytest.raises(UpstreamUnavailable):
                get_score(TENANT, "app-1", "secret")

    def test_raw_failure_is_upstream(self):
        with patch("shared.secure_score.get_tenant_token", return_value="tok"), \
             patch("shared.secure_score.get_latest_secure_score", side_effect=requests.HTTPError("500")), \
             patch("shared.secure_score.get_control_profiles", return_value=[]):
            with pytest.raises(UpstreamUnavailable):
                get_score(TENANT, "app-1", "secret", timeout=5)

    def test_no_score_data(self):
        with patch("shared.secure_score.get_tenant_token", return_value="tok"), \
             patch("shared.secure_score.get_latest_secure_score", return_value=None), \
             patch("shared.secure_score.get_control_profiles", return_value=[]):
            with pytest.raises(UpstreamUnavailable, match="No Secure Score data"):
                get_score(TENANT, "app-1", "secret", timeout=5)


def test_build_score_report(sample_secure_score, sample_profiles):
    report = build_score_report(sample_secure_score, sample_profiles)
    assert report["currentScore"] == 72.5
    assert report["percentage"] == 72
    assert report["lastUpdated"] == "2026-02-22T00:00:00Z"
    assert len(report["controlScores"]) == 2
    assert report["controlScores"][0]["title"] == "Ensure all users can complete MFA"


def test_build_score_report_zero_max():
    report = build_score_report({"currentScore": 0, "maxScore": 0}, [])
    assert report["percentage"] == 0
    assert report["controlScores"] == []


class TestLicenses:
    def test_summarize(self):
        skus = [
            {"skuId": "s1", "skuPartNumber": "E5", "prepaidUnits": {"enabled": 100},
             "consumedUnits": 80, "servicePlans": [{"servicePlanName": "EXCHANGE"}],
             "capabilityStatus": "Enabled"},
            {"skuId": "s2", "skuPartNumber": "E3", "prepaidUnits": {"enabled": 50},
             "consumedUnits": 60},
        ]
        summary = summarize_licenses(skus)
        assert summary["totalLicenses"] == 150
        assert summary["assignedLicenses"] == 140
        assert summary["availableLicenses"] == 10
        assert summary["utilizationPercentage"] == 93
        assert summary["licenseDetails"][1]["servicePlanName"] == "E3"
        assert summary["licenseDetails"][1]["capabilityStatus"] == "Unknown"

    def test_summarize_empty(self):
        assert summarize_licenses([])["utilizationPercentage"] == 0

    def test_get_license_utilization(self):
        with patch("shared.secure_score.get_tenant_token", return_value="tok"), \
             patch("shared.secure_score.get_subscribed_skus", return_value=[]) as mock_skus:
            summary = get_license_utilization(TENANT, "app-1", "secret", timeout=5)
        assert summary["totalLicenses"] == 0
        mock_skus.assert_called_once_with("tok", 5)
