from __future__ import annotations
import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml
from pydantic import ValidationError

from apiforge.definitions.models import (
    DatabaseConnection,
    DefinitionBundle,
    EndpointDefinition,
    FeedDefinition,
    ProviderDefinition,
)

logger = logging.getLogger(__name__)


@dataclass
class _Index:
    """Immutable snapshot of every loaded definition, swapped atomically."""

    providers: Dict[str, ProviderDefinition] = field(default_factory=dict)
    databases: Dict[str, DatabaseConnection] = field(default_factory=dict)
    apis: Dict[Tuple[str, str], EndpointDefinition] = field(default_factory=dict)
    feeds: Dict[Tuple[str, str], FeedDefinition] = field(default_factory=dict)

    def add(self, bundle: DefinitionBundle, source: str) -> None:
        for provider in bundle.providers:
            _put_unique(self.providers, provider.id, provider, "provider", source)
        for db in bundle.databases:
            _put_unique(self.databases, db.id, db, "database", source)
        for api in bundle.apis:
            _put_unique(self.apis, (api.property, api.route), api, "api", source)
        for feed in bundle.feeds:
            _put_unique(self.feeds, (feed.property, feed.route), feed, "feed", source)


def _put_unique(index: Dict, key: Any, value: Any, kind: str, source: str) -> None:
    if key in index:
        raise ValueError(f"Duplicate {kind} {key!r} in {source}")
    index[key] = value


class DefinitionRegistry:
    """
    Loads, validates, and serves endpoint, feed, provider and database
    definitions.

    Backend: directory of YAML bundles. Each file may hold any of the
    top-level lists `providers`, `databases`, `apis`, `feeds`.
    (property, route) must be unique across all files, per kind, so that
    request-path lookup is unambiguous.

    The registry is read-only at request time. reload() rebuilds the index
    off to the side and swaps it in under a lock, so in-flight requests keep
    the snapshot they started with.
    """

    def __init__(self, config_dir: str = "configs/definitions") -> None:
        self._config_dir = Path(config_dir)
        self._index = _Index()
        self._lock = threading.RLock()

    @classmethod
    def from_bundle(cls, raw: Dict[str, Any]) -> "DefinitionRegistry":
        """Build an in-memory registry from an already parsed bundle."""
        registry = cls(config_dir="")
        index = _Index()
        index.add(DefinitionBundle.model_validate(raw), "<memory>")
        registry._index = index
        return registry

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def load_all(self) -> None:
        """
        Scan config_dir for *.yaml / *.yml bundles and index them.

        Raises:
            FileNotFoundError: if config_dir does not exist.
            ValueError: on duplicate ids or (property, route) pairs.
        """
        if not self._config_dir.exists():
            raise FileNotFoundError(
                f"Definitions directory not found: {self._config_dir}"
            )

        paths = sorted(
            list(self._config_dir.glob("*.yaml")) + list(self._config_dir.glob("*.yml"))
        )
        new_index = _Index()
        for yaml_path in paths:
            try:
                raw = yaml.safe_load(yaml_path.read_text()) or {}
                bundle = DefinitionBundle.model_validate(raw)
            except (ValidationError, yaml.YAMLError) as exc:
                logger.error("Failed to load definitions %s: %s", yaml_path, exc)
                raise
            new_index.add(bundle, yaml_path.name)
            logger.info(
                "Loaded %s: %d api(s), %d feed(s), %d provider(s), %d database(s)",
                yaml_path.name, len(bundle.apis), len(bundle.feeds),
                len(bundle.providers), len(bundle.databases),
            )

        with self._lock:
            self._index = new_index

        logger.info("DefinitionRegistry loaded %s", self.counts())

    def reload(self) -> None:
        logger.info("Hot-reloading definitions from %s", self._config_dir)
        self.load_all()

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def find_endpoint(self, property: str, route: str) -> Optional[EndpointDefinition]:
        with self._lock:
            return self._index.apis.get((property, route))

    def find_feed(self, property: str, route: str) -> Optional[FeedDefinition]:
        """Only active feeds are publicly visible."""
        with self._lock:
            feed = self._index.feeds.get((property, route))
        if feed is None or not feed.is_active:
            return None
        return feed

    def get_provider(self, provider_id: Optional[str]) -> Optional[ProviderDefinition]:
        with self._lock:
            return self._index.providers.get(provider_id) if provider_id else None

    def get_database(self, database_id: Optional[str]) -> Optional[DatabaseConnection]:
        with self._lock:
            return self._index.databases.get(database_id) if database_id else None

    def properties(self) -> List[str]:
        """Sorted distinct property names across APIs and feeds."""
        with self._lock:
            keys = list(self._index.apis.keys()) + list(self._index.feeds.keys())
        return sorted({prop for prop, _ in keys})

    def counts(self) -> Dict[str, int]:
        with self._lock:
            index = self._index
            return {
                "apis": len(index.apis),
                "feeds": len(index.feeds),
                "providers": len(index.providers),
                "databases": len(index.databases),
            }
