import pytest

from orgmigrate.config import EngineSettings
from orgmigrate.exceptions import ConfigurationError


def test_defaults():
    settings = EngineSettings()

    assert settings.max_concurrent_per_org == 5
    assert settings.collection_chunk_size == 200
    assert settings.failure_threshold == 5


def test_from_dict_coerces_and_ignores_unknown_keys():
    settings = EngineSettings.from_dict({
        "max_concurrent_per_org": "3",
        "max_requests_per_second": "2.5",
        "api_version": "60.0",
        "unknown_setting": 1,
    })

    assert settings.max_concurrent_per_org == 3
    assert settings.max_requests_per_second == 2.5
    assert settings.api_version == "60.0"


def test_from_dict_rejects_bad_numbers():
    with pytest.raises(ConfigurationError, match="bulk_threshold"):
        EngineSettings.from_dict({"bulk_threshold": "lots"})


def test_from_env(monkeypatch):
    monkeypatch.setenv("ORGMIGRATE_MAX_REQUEST_RETRIES", "7")
    monkeypatch.setenv("ORGMIGRATE_CLIENT_ID", "connected-app")
    monkeypatch.setenv("ORGMIGRATE_CLIENT_SECRET", "s3cret")

    settings = EngineSettings.from_env()

    assert settings.max_request_retries == 7
    assert settings.client_id == "connected-app"
    assert settings.client_secret == "s3cret"


def test_to_dict_omits_secret():
    data = EngineSettings(client_secret="s3cret").to_dict()

    assert "client_secret" not in data
    assert data["api_version"] == "61.0"


@pytest.mark.parametrize("org_type, expected", [
    ("production", "https://login.salesforce.com"),
    ("Sandbox", "https://test.salesforce.com"),
    (None, "https://login.salesforce.com"),
])
def test_login_url(org_type, expected):
    assert EngineSettings().login_url(org_type) == expected
