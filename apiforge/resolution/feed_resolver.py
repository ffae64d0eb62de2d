from __future__ import annotations
import copy
import datetime
import logging
import re
from collections.abc import Mapping
from typing import Any, Dict, List, Optional, Tuple

from opentelemetry import trace

from apiforge.connectors.http_provider import HttpProviderClient
from apiforge.definitions.models import FeedDefinition
from apiforge.definitions.registry import DefinitionRegistry
from apiforge.resolution.key_path import extract, is_falsy
from apiforge.resolution.templates import TemplateNode, compile_template

logger = logging.getLogger(__name__)
tracer = trace.get_tracer("apiforge.resolver")

DEFAULT_LIMIT = 20
_LEADING_INT = re.compile(r"\s*([+-]?\d+)")


def _parse_int(value: Any) -> Optional[int]:
    """Leading-integer parse: "10" → 10, "10abc" → 10, "abc" / None → None."""
    if value is None:
        return None
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    match = _LEADING_INT.match(str(value))
    return int(match.group(1)) if match else None


def pagination_window(feed: FeedDefinition, query_params: Mapping) -> Tuple[int, int]:
    """
    (skip, limit) for a request.

    skip falls back to 0. A missing, non-numeric or zero limit falls back to
    pagination.default_limit, then to 20.
    """
    pagination = feed.pagination
    skip = _parse_int(query_params.get(pagination.skip_param or "skip")) or 0
    limit = (
        _parse_int(query_params.get(pagination.limit_param or "limit"))
        or pagination.default_limit
        or DEFAULT_LIMIT
    )
    return skip, limit


class FeedResolver:
    """
    Produces the feed envelope for a FeedDefinition.

    Flow per request:
      pagination window → provider call (skip/limit injected into params) →
      item extraction → walk items, interleaving ads by output position →
      per-item data map template → envelope

    Any failure is logged and returned as {"error": message}; this resolver
    never raises.
    """

    def __init__(
        self,
        registry: DefinitionRegistry,
        provider_client: HttpProviderClient,
    ) -> None:
        self._registry = registry
        self._provider_client = provider_client

    async def resolve(
        self, feed: FeedDefinition, query_params: Optional[Mapping] = None
    ) -> Dict[str, Any]:
        with tracer.start_as_current_span(
            "resolver.feed",
            attributes={"feed.property": feed.property, "feed.route": feed.route},
        ) as span:
            try:
                items: List[Dict[str, Any]] = []
                if feed.provider_id:
                    raw_items = await self._fetch_items(feed, query_params or {})
                    if raw_items is None:
                        return {"error": "Provider not found"}
                    items = self._build_items(feed, raw_items)
                span.set_attribute("feed.items", len(items))
                return self._envelope(feed, items)
            except Exception as exc:
                logger.exception("Feed resolution failed for %s/%s", feed.property, feed.route)
                span.record_exception(exc)
                return {"error": str(exc)}

    # ------------------------------------------------------------------
    # Fetch
    # ------------------------------------------------------------------

    async def _fetch_items(
        self, feed: FeedDefinition, query_params: Mapping
    ) -> Optional[List[Any]]:
        """Returns None when the provider is missing, else the source item list."""
        provider = self._registry.get_provider(feed.provider_id)
        if provider is None:
            return None

        skip, limit = pagination_window(feed, query_params)
        pagination = feed.pagination
        paged = provider.model_copy(update={
            "params": {
                **provider.params,
                pagination.skip_param or "skip": skip,
                pagination.limit_param or "limit": limit,
            },
        })

        response = await self._provider_client.call(paged)

        raw_items = response
        if feed.response_key_path:
            raw_items = extract(response, feed.response_key_path)

        if not isinstance(raw_items, list):
            logger.warning(
                "Feed %s/%s: provider response at %r is not an array (%s); using no items",
                feed.property, feed.route, feed.response_key_path, type(raw_items).__name__,
            )
            return []
        return raw_items

    # ------------------------------------------------------------------
    # Item assembly
    # ------------------------------------------------------------------

    def _build_items(self, feed: FeedDefinition, raw_items: List[Any]) -> List[Dict[str, Any]]:
        """
        Interleave ads and content by running output position (1-based).

        Before each content item, every ad slot listed at the current position
        is filled, so consecutive ad positions produce back-to-back ads. Each
        listed position yields at most one ad.
        """
        template = feed.item_template
        data_map: TemplateNode = compile_template(template.data_map_template or {}, embedded=True)
        ad_config = feed.ad_config
        pending_ads = set(ad_config.positions) if ad_config.enabled else set()

        items: List[Dict[str, Any]] = []
        position = 1
        for item in raw_items:
            while position in pending_ads:
                pending_ads.discard(position)
                items.append(self._ad_entry(feed, position))
                position += 1

            source = item if isinstance(item, Mapping) else {}
            item_id = source.get("id")
            date_modified = source.get("updated_at")
            if date_modified is None:
                date_modified = source.get("dateModified")
            items.append({
                "position": position,
                "componentId": template.component_id,
                "contentProvider": template.content_provider,
                "content": _content(
                    item_id=item_id if item_id is not None else str(position),
                    content_type=template.content_type,
                    date_modified=date_modified,
                    data_map=data_map.render(item),
                ),
            })
            position += 1
        return items

    def _ad_entry(self, feed: FeedDefinition, position: int) -> Dict[str, Any]:
        ad_config = feed.ad_config
        return {
            "position": position,
            "componentId": ad_config.component_id,
            "contentProvider": ad_config.content_provider,
            "content": _content(
                item_id="AD_UNIT_CONTENT",
                content_type="ad_unit_content",
                date_modified=datetime.datetime.now(datetime.timezone.utc).isoformat(),
                data_map=copy.deepcopy(ad_config.ad_content or {}),
            ),
        }

    # ------------------------------------------------------------------
    # Envelope
    # ------------------------------------------------------------------

    def _envelope(self, feed: FeedDefinition, items: List[Dict[str, Any]]) -> Dict[str, Any]:
        meta = feed.feed_meta
        return {
            "feedId": _or_none(meta.feed_id),
            "feedVersionId": _or_none(meta.feed_version_id),
            "userId": _or_none(meta.user_id),
            "sessionId": _or_none(meta.session_id),
            "pageId": _or_none(meta.page_id),
            "pageNo": meta.page_no or 1,
            "items": items,
            "feedTitle": _or_none(meta.feed_title),
            "stickyAds": copy.deepcopy(feed.sticky_ads),
            "interstitialAds": copy.deepcopy(feed.interstitial_ads),
            "gaEvents": copy.deepcopy(feed.ga_events),
        }


def _content(
    item_id: Any, content_type: str, date_modified: Any, data_map: Any
) -> Dict[str, Any]:
    return {
        "id": item_id,
        "propertyId": None,
        "type": content_type,
        "dateModified": date_modified,
        "categories": [],
        "categoryLabel": None,
        "categorySlug": None,
        "tags": None,
        "dataMap": data_map,
        "bookmarked": False,
    }


def _or_none(value: Any) -> Any:
    """Envelope meta fields report unset values ("", 0, None) as null."""
    return None if is_falsy(value) else value
