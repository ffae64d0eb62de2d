from __future__ import annotations
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _Definition(BaseModel):
    """Stored definitions use camelCase keys; Python code uses snake_case."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ProviderDefinition(_Definition):
    """A reusable outbound HTTP call. Immutable per call."""

    id: str
    name: str = ""
    method: Literal["GET", "POST"] = "GET"
    url: str
    headers: Dict[str, Any] = Field(default_factory=dict)
    params: Dict[str, Any] = Field(default_factory=dict)
    body: Optional[Any] = None         # POST only


class DatabaseConnection(_Definition):
    """Capability reference to a database. No connection state is kept."""

    id: str
    name: str = ""
    type: str                          # 'MONGODB' | 'MYSQL'
    uri: str
    database: str = ""


class ApiSourceConfig(_Definition):
    type: Literal["API"] = "API"
    provider_id: str
    response_key_path: Optional[str] = None
    static_data: Optional[Dict[str, Any]] = None
    dynamic_data_key: Optional[str] = None
    dynamic_data_template: Optional[Dict[str, Any]] = None
    # Applied per item when the extracted data is a list.


class DatabaseSourceConfig(_Definition):
    type: Literal["DATABASE"] = "DATABASE"
    database_config_id: str
    collection: str                    # collection (Mongo) or table (MySQL)
    query: Dict[str, Any] = Field(default_factory=dict)
    # Mongo: filter document. MySQL: equality-AND WHERE over the keys.


DynamicConfig = Annotated[
    Union[ApiSourceConfig, DatabaseSourceConfig], Field(discriminator="type")
]


class EndpointDefinition(_Definition):
    """
    A virtual API endpoint, addressed by (property, route).

    STATIC endpoints carry an inline JSON value or a blob key for payloads
    too large to store inline. DYNAMIC endpoints carry exactly one of the
    two dynamic_config shapes.
    """

    id: str
    label: str = ""
    property: str
    route: str
    api_type: Literal["STATIC", "DYNAMIC"]
    method: Literal["GET", "POST"] = "GET"

    rotation: int = Field(default=1, ge=0)
    # 0 = use the source's natural count, 1 = no rotation, >1 = repeat N times.

    static_response: Optional[Any] = None
    static_blob_key: Optional[str] = None
    dynamic_config: Optional[DynamicConfig] = None

    hit_count: int = 0


class FeedMeta(_Definition):
    feed_id: Optional[Any] = None
    feed_version_id: Optional[Any] = None
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    page_id: Optional[str] = None
    page_no: Optional[int] = 1
    feed_title: Optional[str] = None


class ItemTemplate(_Definition):
    component_id: int = 108
    content_provider: int = 1
    content_type: str = "video"
    data_map_template: Dict[str, Any] = Field(default_factory=dict)
    # Field mappings: {"outputField": "{{inputField}}"} or "pre_{{field}}".


class AdConfig(_Definition):
    enabled: bool = False
    positions: List[int] = Field(default_factory=list)   # 1-based output positions
    component_id: int = 12
    content_provider: int = 4
    ad_content: Dict[str, Any] = Field(default_factory=dict)


class Pagination(_Definition):
    skip_param: str = "skip"
    limit_param: str = "limit"
    default_limit: Optional[int] = 20


class FeedDefinition(_Definition):
    """
    A paginated, templated, ad-interleaved list endpoint.

    Items come from provider_id (optional: a feed without a provider still
    returns its envelope with no items). interstitial_ads, sticky_ads and
    ga_events are opaque and copied into the response verbatim.
    """

    id: str
    name: str = ""
    property: str
    route: str

    provider_id: Optional[str] = None
    response_key_path: str = ""

    feed_meta: FeedMeta = Field(default_factory=FeedMeta)
    item_template: ItemTemplate = Field(default_factory=ItemTemplate)
    ad_config: AdConfig = Field(default_factory=AdConfig)

    interstitial_ads: Optional[Any] = None
    sticky_ads: Optional[Any] = None
    ga_events: Optional[Any] = None

    pagination: Pagination = Field(default_factory=Pagination)
    is_active: bool = True


class DefinitionBundle(_Definition):
    """One YAML document: any mix of providers, databases, APIs and feeds."""

    providers: List[ProviderDefinition] = Field(default_factory=list)
    databases: List[DatabaseConnection] = Field(default_factory=list)
    apis: List[EndpointDefinition] = Field(default_factory=list)
    feeds: List[FeedDefinition] = Field(default_factory=list)
