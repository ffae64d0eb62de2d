from __future__ import annotations
import asyncio
import copy
import json
import logging
from typing import Any, Dict, Optional

from opentelemetry import trace

from apiforge.connectors.blob_store import BlobStoreError
from apiforge.connectors.databases import DatabaseReadError, MongoReader, MysqlReader
from apiforge.connectors.http_provider import HttpProviderClient
from apiforge.definitions.models import (
    ApiSourceConfig,
    DatabaseSourceConfig,
    EndpointDefinition,
)
from apiforge.definitions.registry import DefinitionRegistry
from apiforge.resolution.key_path import extract
from apiforge.resolution.rotation import rotate
from apiforge.resolution.templates import apply_template

logger = logging.getLogger(__name__)
tracer = trace.get_tracer("apiforge.resolver")


def is_error_payload(payload: Any) -> bool:
    return isinstance(payload, dict) and isinstance(payload.get("error"), str)


class _ResolutionFailed(Exception):
    """Missing or broken configuration; answered as {"error": message}."""


class ApiResolver:
    """
    Produces the JSON payload for an EndpointDefinition.

    Dispatch:
      STATIC            → inline value, else stored blob, else {}
      DYNAMIC/API       → provider call → key path → per-item template →
                          merge with static_data
      DYNAMIC/DATABASE  → database reader keyed by connection type
    then rotation when endpoint.rotation > 1.

    Missing configuration comes back as an {"error": ...} payload.
    Upstream failures (UpstreamError, DatabaseReadError) propagate to the
    caller. Nothing is cached and nothing is kept between calls.
    """

    def __init__(
        self,
        registry: DefinitionRegistry,
        provider_client: HttpProviderClient,
        blob_store: Any = None,
        db_readers: Optional[Dict[str, Any]] = None,
        static_bucket: str = "apiforge-static",
        timeout_s: float = 30.0,
    ) -> None:
        self._registry = registry
        self._provider_client = provider_client
        self._blob_store = blob_store
        self._db_readers = (
            db_readers
            if db_readers is not None
            else {"MONGODB": MongoReader(), "MYSQL": MysqlReader()}
        )
        self._static_bucket = static_bucket
        self._timeout_s = timeout_s

    # ------------------------------------------------------------------
    # Public entry point
    # ------------------------------------------------------------------

    async def resolve(self, endpoint: EndpointDefinition) -> Any:
        with tracer.start_as_current_span(
            "resolver.api",
            attributes={
                "api.property": endpoint.property,
                "api.route": endpoint.route,
                "api.type": endpoint.api_type,
                "api.rotation": endpoint.rotation,
            },
        ) as span:
            try:
                payload = await self._dispatch(endpoint)
            except _ResolutionFailed as exc:
                span.set_attribute("api.error", str(exc))
                return {"error": str(exc)}

            if endpoint.rotation > 1:
                payload = rotate(payload, endpoint.rotation)
            return payload

    async def _dispatch(self, endpoint: EndpointDefinition) -> Any:
        if endpoint.api_type == "STATIC":
            return await self._resolve_static(endpoint)

        config = endpoint.dynamic_config
        if isinstance(config, ApiSourceConfig):
            return await self._resolve_provider(config)
        if isinstance(config, DatabaseSourceConfig):
            return await self._resolve_database(config)
        raise _ResolutionFailed("Unknown API type")

    # ------------------------------------------------------------------
    # STATIC
    # ------------------------------------------------------------------

    async def _resolve_static(self, endpoint: EndpointDefinition) -> Any:
        if endpoint.static_response is not None:
            return copy.deepcopy(endpoint.static_response)

        if endpoint.static_blob_key:
            if self._blob_store is None:
                logger.error(
                    "No blob store configured for %s/%s (key=%s)",
                    endpoint.property, endpoint.route, endpoint.static_blob_key,
                )
                raise _ResolutionFailed("Failed to fetch static response")
            try:
                raw = await self._blob_store.get(self._static_bucket, endpoint.static_blob_key)
                return json.loads(raw)
            except (BlobStoreError, ValueError) as exc:
                logger.error(
                    "Static blob fetch failed for %s/%s: %s",
                    endpoint.property, endpoint.route, exc,
                )
                raise _ResolutionFailed("Failed to fetch static response") from exc

        return {}

    # ------------------------------------------------------------------
    # DYNAMIC / API
    # ------------------------------------------------------------------

    async def _resolve_provider(self, config: ApiSourceConfig) -> Any:
        provider = self._registry.get_provider(config.provider_id)
        if provider is None:
            raise _ResolutionFailed("Provider not found")

        raw = await self._provider_client.call(provider)

        data = raw
        if config.response_key_path:
            data = extract(raw, config.response_key_path)

        if config.dynamic_data_template and isinstance(data, list):
            data = apply_template(data, config.dynamic_data_template)

        static_data = copy.deepcopy(config.static_data or {})
        if config.dynamic_data_key:
            return {**static_data, config.dynamic_data_key: data}
        if static_data:
            return {**static_data, "data": data}
        return data

    # ------------------------------------------------------------------
    # DYNAMIC / DATABASE
    # ------------------------------------------------------------------

    async def _resolve_database(self, config: DatabaseSourceConfig) -> Any:
        connection = self._registry.get_database(config.database_config_id)
        if connection is None:
            raise _ResolutionFailed("Database config not found")

        reader = self._db_readers.get(connection.type)
        if reader is None:
            raise _ResolutionFailed("Unknown database type")

        with tracer.start_as_current_span(
            "resolver.database",
            attributes={"db.type": connection.type, "db.collection": config.collection},
        ):
            try:
                return await asyncio.wait_for(
                    reader.read(
                        connection.uri, connection.database, config.collection, config.query,
                    ),
                    timeout=self._timeout_s,
                )
            except asyncio.TimeoutError as exc:
                raise DatabaseReadError(
                    f"Database read timed out after {self._timeout_s:.0f}s"
                ) from exc
