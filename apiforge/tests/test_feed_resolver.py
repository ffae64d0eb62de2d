"""Tests for FeedResolver: pagination, ad interleaving, templating, envelope."""
import pytest

from apiforge.connectors.http_provider import UpstreamError
from apiforge.definitions.models import FeedDefinition
from apiforge.definitions.registry import DefinitionRegistry
from apiforge.resolution.feed_resolver import FeedResolver, pagination_window


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _registry() -> DefinitionRegistry:
    return DefinitionRegistry.from_bundle({
        "providers": [
            {"id": "shorts", "url": "https://example.test/shorts",
             "params": {"lang": "en", "limit": 99}},
        ],
    })


def _feed(**overrides) -> FeedDefinition:
    raw = {
        "id": "f1", "property": "web-id", "route": "reels", "providerId": "shorts",
        "responseKeyPath": "data.list",
        "feedMeta": {"feedId": 7, "sessionId": "s-1", "pageId": "home", "feedTitle": "Reels"},
        "itemTemplate": {"dataMapTemplate": {"title": "{{title}}", "thumb": "https://cdn/{{id}}.jpg"}},
    }
    raw.update(overrides)
    return FeedDefinition.model_validate(raw)


def _items(n: int) -> list:
    return [{"id": f"v{i}", "title": f"T{i}"} for i in range(1, n + 1)]


@pytest.fixture
def resolver(fake_client):
    return FeedResolver(_registry(), fake_client)


def _kinds(result) -> list:
    return [
        (entry["position"], "ad" if entry["content"]["id"] == "AD_UNIT_CONTENT" else entry["content"]["id"])
        for entry in result["items"]
    ]


# ---------------------------------------------------------------------------
# Pagination window
# ---------------------------------------------------------------------------

class TestPaginationWindow:
    def test_defaults(self):
        assert pagination_window(_feed(), {}) == (0, 20)

    def test_query_values(self):
        assert pagination_window(_feed(), {"skip": "40", "limit": "10"}) == (40, 10)

    def test_leading_integer_parse(self):
        assert pagination_window(_feed(), {"skip": "5abc", "limit": "7.9"}) == (5, 7)

    def test_non_numeric_falls_back(self):
        assert pagination_window(_feed(), {"skip": "x", "limit": "y"}) == (0, 20)

    def test_zero_limit_falls_back_to_default(self):
        feed = _feed(pagination={"defaultLimit": 12})
        assert pagination_window(feed, {"limit": "0"}) == (0, 12)

    def test_custom_param_names(self):
        feed = _feed(pagination={"skipParam": "offset", "limitParam": "size", "defaultLimit": 5})
        assert pagination_window(feed, {"offset": "3"}) == (3, 5)
        assert pagination_window(feed, {"offset": "3", "size": "9", "skip": "100"}) == (3, 9)

    def test_missing_default_limit_falls_back_to_twenty(self):
        feed = _feed(pagination={"defaultLimit": None})
        assert pagination_window(feed, {}) == (0, 20)


# ---------------------------------------------------------------------------
# Provider call
# ---------------------------------------------------------------------------

class TestProviderCall:
    @pytest.mark.asyncio
    async def test_pagination_injected_into_params(self, resolver, fake_client):
        fake_client.responses["shorts"] = {"data": {"list": []}}
        await resolver.resolve(_feed(), {"skip": "20", "limit": "10"})
        params = fake_client.calls[0].params
        assert params == {"lang": "en", "skip": 20, "limit": 10}

    @pytest.mark.asyncio
    async def test_stored_provider_not_mutated(self, resolver, fake_client):
        fake_client.responses["shorts"] = {"data": {"list": []}}
        await resolver.resolve(_feed(), {"skip": "20"})
        assert _registry().get_provider("shorts").params == {"lang": "en", "limit": 99}
        assert resolver._registry.get_provider("shorts").params == {"lang": "en", "limit": 99}

    @pytest.mark.asyncio
    async def test_custom_param_names_injected(self, resolver, fake_client):
        fake_client.responses["shorts"] = {"data": {"list": []}}
        feed = _feed(pagination={"skipParam": "offset", "limitParam": "size"})
        await resolver.resolve(feed, {"offset": "2"})
        assert fake_client.calls[0].params == {"lang": "en", "limit": 99, "offset": 2, "size": 20}

    @pytest.mark.asyncio
    async def test_raw_response_used_without_key_path(self, resolver, fake_client):
        fake_client.responses["shorts"] = _items(2)
        result = await resolver.resolve(_feed(responseKeyPath=""))
        assert len(result["items"]) == 2

    @pytest.mark.asyncio
    async def test_non_array_is_treated_as_empty(self, resolver, fake_client):
        fake_client.responses["shorts"] = {"data": {"list": {"not": "a list"}}}
        result = await resolver.resolve(_feed())
        assert "error" not in result
        assert result["items"] == []

    @pytest.mark.asyncio
    async def test_missing_provider(self, resolver, fake_client):
        result = await resolver.resolve(_feed(providerId="ghost"))
        assert result == {"error": "Provider not found"}

    @pytest.mark.asyncio
    async def test_no_provider_returns_envelope(self, resolver, fake_client):
        result = await resolver.resolve(_feed(providerId=None))
        assert result["items"] == []
        assert result["feedId"] == 7
        assert "error" not in result
        assert fake_client.calls == []

    @pytest.mark.asyncio
    async def test_upstream_failure_becomes_error_payload(self, resolver, fake_client):
        fake_client.error = UpstreamError("External API failed: HTTP 500: Internal Server Error")
        result = await resolver.resolve(_feed())
        assert result == {"error": "External API failed: HTTP 500: Internal Server Error"}


# ---------------------------------------------------------------------------
# Ad interleaving
# ---------------------------------------------------------------------------

class TestAdInterleaving:
    @pytest.mark.asyncio
    async def test_single_ad_shifts_content(self, resolver, fake_client):
        fake_client.responses["shorts"] = {"data": {"list": _items(3)}}
        feed = _feed(adConfig={"enabled": True, "positions": [2]})
        result = await resolver.resolve(feed)
        assert _kinds(result) == [(1, "v1"), (2, "ad"), (3, "v2"), (4, "v3")]

    @pytest.mark.asyncio
    async def test_consecutive_positions_insert_back_to_back(self, resolver, fake_client):
        fake_client.responses["shorts"] = {"data": {"list": _items(3)}}
        feed = _feed(adConfig={"enabled": True, "positions": [2, 3]})
        result = await resolver.resolve(feed)
        assert _kinds(result) == [(1, "v1"), (2, "ad"), (3, "ad"), (4, "v2"), (5, "v3")]

    @pytest.mark.asyncio
    async def test_ad_at_first_position(self, resolver, fake_client):
        fake_client.responses["shorts"] = {"data": {"list": _items(2)}}
        feed = _feed(adConfig={"enabled": True, "positions": [1, 3]})
        result = await resolver.resolve(feed)
        assert _kinds(result) == [(1, "ad"), (2, "v1"), (3, "ad"), (4, "v2")]

    @pytest.mark.asyncio
    async def test_positions_past_content_produce_nothing(self, resolver, fake_client):
        fake_client.responses["shorts"] = {"data": {"list": _items(2)}}
        feed = _feed(adConfig={"enabled": True, "positions": [3, 10]})
        result = await resolver.resolve(feed)
        assert _kinds(result) == [(1, "v1"), (2, "v2")]

    @pytest.mark.asyncio
    async def test_disabled_ads(self, resolver, fake_client):
        fake_client.responses["shorts"] = {"data": {"list": _items(3)}}
        feed = _feed(adConfig={"enabled": False, "positions": [1, 2]})
        result = await resolver.resolve(feed)
        assert _kinds(result) == [(1, "v1"), (2, "v2"), (3, "v3")]

    @pytest.mark.asyncio
    async def test_unordered_and_duplicate_positions(self, resolver, fake_client):
        fake_client.responses["shorts"] = {"data": {"list": _items(3)}}
        feed = _feed(adConfig={"enabled": True, "positions": [4, 2, 2]})
        result = await resolver.resolve(feed)
        assert _kinds(result) == [(1, "v1"), (2, "ad"), (3, "v2"), (4, "ad"), (5, "v3")]

    @pytest.mark.asyncio
    async def test_ad_entry_shape(self, resolver, fake_client):
        fake_client.responses["shorts"] = {"data": {"list": _items(1)}}
        feed = _feed(adConfig={
            "enabled": True, "positions": [1], "componentId": 33, "contentProvider": 9,
            "adContent": {"slot": "/123/top", "sizes": [[300, 250]]},
        })
        result = await resolver.resolve(feed)
        ad = result["items"][0]
        assert ad["componentId"] == 33
        assert ad["contentProvider"] == 9
        content = ad["content"]
        assert content["id"] == "AD_UNIT_CONTENT"
        assert content["type"] == "ad_unit_content"
        assert content["dataMap"] == {"slot": "/123/top", "sizes": [[300, 250]]}
        assert content["dateModified"]
        assert content["categories"] == []
        assert content["propertyId"] is None
        assert content["bookmarked"] is False

    @pytest.mark.asyncio
    async def test_ad_content_not_shared(self, resolver, fake_client):
        fake_client.responses["shorts"] = {"data": {"list": _items(3)}}
        feed = _feed(adConfig={"enabled": True, "positions": [1, 3], "adContent": {"k": [1]}})
        result = await resolver.resolve(feed)
        result["items"][0]["content"]["dataMap"]["k"].append(2)
        assert result["items"][2]["content"]["dataMap"] == {"k": [1]}
        assert feed.ad_config.ad_content == {"k": [1]}


# ---------------------------------------------------------------------------
# Content items and envelope
# ---------------------------------------------------------------------------

class TestContentItems:
    @pytest.mark.asyncio
    async def test_item_template_applied(self, resolver, fake_client):
        fake_client.responses["shorts"] = {"data": {"list": [{"id": "v1", "title": "Hello"}]}}
        result = await resolver.resolve(_feed())
        entry = result["items"][0]
        assert entry["componentId"] == 108
        assert entry["contentProvider"] == 1
        assert entry["content"]["type"] == "video"
        assert entry["content"]["dataMap"] == {"title": "Hello", "thumb": "https://cdn/v1.jpg"}

    @pytest.mark.asyncio
    async def test_missing_fields(self, resolver, fake_client):
        fake_client.responses["shorts"] = {"data": {"list": [{}]}}
        result = await resolver.resolve(_feed())
        content = result["items"][0]["content"]
        assert content["id"] == "1"
        assert content["dateModified"] is None
        assert content["dataMap"] == {"title": None, "thumb": "https://cdn/.jpg"}

    @pytest.mark.asyncio
    async def test_date_modified_fallbacks(self, resolver, fake_client):
        fake_client.responses["shorts"] = {"data": {"list": [
            {"id": 1, "updated_at": "2024-01-02", "dateModified": "2023-01-01"},
            {"id": 2, "dateModified": "2023-01-01"},
        ]}}
        result = await resolver.resolve(_feed())
        assert [e["content"]["dateModified"] for e in result["items"]] == ["2024-01-02", "2023-01-01"]
        assert [e["content"]["id"] for e in result["items"]] == [1, 2]

    @pytest.mark.asyncio
    async def test_custom_item_template_fields(self, resolver, fake_client):
        fake_client.responses["shorts"] = {"data": {"list": _items(1)}}
        feed = _feed(itemTemplate={"componentId": 5, "contentProvider": 2, "contentType": "article"})
        result = await resolver.resolve(feed)
        entry = result["items"][0]
        assert (entry["componentId"], entry["contentProvider"]) == (5, 2)
        assert entry["content"]["type"] == "article"
        assert entry["content"]["dataMap"] == {}


class TestEnvelope:
    @pytest.mark.asyncio
    async def test_envelope_fields(self, resolver, fake_client):
        fake_client.responses["shorts"] = {"data": {"list": []}}
        feed = _feed(
            stickyAds={"unit": "sticky"},
            interstitialAds=[{"unit": "inter"}],
            gaEvents={"view": "feed_view"},
        )
        result = await resolver.resolve(feed)
        assert list(result.keys()) == [
            "feedId", "feedVersionId", "userId", "sessionId", "pageId", "pageNo",
            "items", "feedTitle", "stickyAds", "interstitialAds", "gaEvents",
        ]
        assert result["feedId"] == 7
        assert result["sessionId"] == "s-1"
        assert result["pageId"] == "home"
        assert result["feedTitle"] == "Reels"
        assert result["pageNo"] == 1
        assert result["feedVersionId"] is None
        assert result["userId"] is None
        assert result["stickyAds"] == {"unit": "sticky"}
        assert result["interstitialAds"] == [{"unit": "inter"}]
        assert result["gaEvents"] == {"view": "feed_view"}

    @pytest.mark.asyncio
    async def test_opaque_fields_default_to_none(self, resolver):
        result = await resolver.resolve(_feed(providerId=None))
        assert result["stickyAds"] is None
        assert result["interstitialAds"] is None
        assert result["gaEvents"] is None

    @pytest.mark.asyncio
    async def test_falsy_meta_values_are_null(self, resolver):
        feed = _feed(
            providerId=None,
            feedMeta={"feedId": 0, "sessionId": "", "pageId": "", "feedTitle": "", "pageNo": 0},
        )
        result = await resolver.resolve(feed)
        assert result["feedId"] is None
        assert result["sessionId"] is None
        assert result["pageId"] is None
        assert result["feedTitle"] is None
        assert result["pageNo"] == 1
