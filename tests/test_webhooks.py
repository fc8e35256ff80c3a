import pytest

from stockledger.application.webhooks import extract_supplied_key, is_valid_trendyol_request, keys_match
from stockledger.domain.models import Integration


@pytest.fixture
def integrations(session):
    active = Integration(provider="trendyol", type="sales_channel", is_active=True, settings={"api_key": "ty-secret-1"})
    second = Integration(provider="trendyol", type="sales_channel", is_active=True, settings={"api_key": "ty-secret-2"})
    inactive = Integration(provider="trendyol", type="sales_channel", is_active=False, settings={"api_key": "ty-old"})
    shopify = Integration(provider="shopify", type="sales_channel", is_active=True, settings={"api_key": "shop-key"})
    session.add_all([active, second, inactive, shopify])
    session.commit()
    return {"active": active.id, "second": second.id}


def test_key_sources_in_priority_order():
    headers = {
        "X-Api-Key": "from-header",
        "X-Trendyol-Api-Key": "from-legacy-header",
        "Authorization": "Bearer from-bearer",
    }
    assert extract_supplied_key(headers, {"apiKey": "from-query"}) == "from-header"

    del headers["X-Api-Key"]
    assert extract_supplied_key(headers, {"apiKey": "from-query"}) == "from-legacy-header"

    del headers["X-Trendyol-Api-Key"]
    assert extract_supplied_key(headers, {"apiKey": "from-query"}) == "from-query"
    assert extract_supplied_key(headers, {}) == "from-bearer"


def test_header_lookup_ignores_case():
    assert extract_supplied_key({"x-api-key": "abc"}, {}) == "abc"


def test_no_key_supplied():
    assert extract_supplied_key({"Authorization": "Basic dXNlcjpwYXNz"}, {}) is None
    assert extract_supplied_key({}, {}) is None


def test_keys_match_requires_exact_equality():
    assert keys_match("secret", "secret")
    assert not keys_match("secret", "Secret")
    assert not keys_match("secret ", "secret")
    assert not keys_match("", "")
    assert not keys_match("secret", None)


def test_request_matches_active_integration(session, integrations):
    integration = is_valid_trendyol_request(session, {"X-Api-Key": "ty-secret-2"}, {})
    assert integration is not None
    assert integration.id == integrations["second"]


def test_request_rejected(session, integrations):
    assert is_valid_trendyol_request(session, {}, {}) is None
    assert is_valid_trendyol_request(session, {"X-Api-Key": "wrong"}, {}) is None
    assert is_valid_trendyol_request(session, {"X-Api-Key": "ty-old"}, {}) is None
    assert is_valid_trendyol_request(session, {"X-Api-Key": "shop-key"}, {}) is None


def test_request_rejected_without_configured_integration(session, engine):
    assert is_valid_trendyol_request(session, {"X-Api-Key": "anything"}, {}) is None
