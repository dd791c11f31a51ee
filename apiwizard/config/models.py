from __future__ import annotations
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from apiwizard.errors import InvalidConcatenationError, InvalidRelationshipError

IDENTIFIER_PATTERN = r"^[A-Za-z0-9][A-Za-z0-9_-]*$"


class WizardModel(BaseModel):
    """
    Base for all persisted wizard entities.

    The authoring UI stores camelCase keys (targetPath, sourceId, ...);
    aliases accept those while attribute access stays snake_case.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


# ----------------------------------------------------------------------
# Data sources
# ----------------------------------------------------------------------

class ParameterMapping(WizardModel):
    """Substitutes an external query parameter into a '{placeholder}' URL token."""

    query_param: str = Field(alias="queryParam")
    url_placeholder: str = Field(alias="urlPlaceholder")
    required: bool = False
    default_value: Optional[str] = Field(default=None, alias="defaultValue")


class ApiSourceConfig(WizardModel):
    url: str
    method: str = "GET"
    headers: Dict[str, str] = Field(default_factory=dict)
    auth_type: str = "none"            # 'none' | 'bearer' | 'api_key' | 'basic'
    auth_token: str = ""               # 'env://VAR_NAME' or raw token
    api_key_header: str = ""
    api_key_value: str = ""
    body: Optional[Any] = None
    parameter_mappings: List[ParameterMapping] = Field(default_factory=list)


class RssSourceConfig(WizardModel):
    url: str


class DatabaseSourceConfig(WizardModel):
    connection: Optional[str] = None   # DuckDB database path; None uses the connector default
    query: str
    # Optional inline tables registered before the query runs (dev/demo mode).
    tables: Dict[str, List[Dict[str, Any]]] = Field(default_factory=dict)


class FileSourceConfig(WizardModel):
    url: str
    format: str = "auto"               # 'auto' | 'json' | 'csv'


class DataSource(WizardModel):
    """A fetchable payload provider, referenced by id from mappings/relationships."""

    id: str
    name: str = ""
    type: Literal["api", "database", "file", "rss"]
    category: str = ""

    api_config: Optional[ApiSourceConfig] = None
    rss_config: Optional[RssSourceConfig] = None
    database_config: Optional[DatabaseSourceConfig] = None
    file_config: Optional[FileSourceConfig] = None

    fields: Optional[List[str]] = None
    sample_data: Optional[Any] = None

    rate_limit_capacity: int = 30
    rate_limit_refill_rate: float = 1.0
    freshness_ttl_ms: int = 60_000
    timeout_s: float = 10.0

    @model_validator(mode="after")
    def _check_type_config(self) -> "DataSource":
        required = {
            "api": self.api_config,
            "rss": self.rss_config,
            "database": self.database_config,
            "file": self.file_config,
        }[self.type]
        if required is None and self.sample_data is None:
            raise ValueError(
                f"data source '{self.id}' of type '{self.type}' needs "
                f"{self.type}_config or sample_data"
            )
        return self


# ----------------------------------------------------------------------
# Field mapping
# ----------------------------------------------------------------------

ConditionOperator = Literal[
    "equals", "not_equals", "contains", "not_contains",
    "starts_with", "ends_with",
    "greater_than", "less_than", "greater_than_or_equal", "less_than_or_equal",
    "is_empty", "is_not_empty", "in", "not_in", "regex_match",
]


class FieldCondition(WizardModel):
    # Path resolved against the mapping's source; empty → the mapped value itself.
    field: str = ""
    operator: ConditionOperator
    value: Any = None
    result: Any = None


class FieldMapping(WizardModel):
    id: str
    target_field: str = Field(alias="targetPath")
    source_id: Optional[str] = Field(default=None, alias="sourceId")
    source_field: str = Field(default="", alias="sourcePath")
    transform_type: Optional[str] = Field(default=None, alias="transformType")
    transform_config: Dict[str, Any] = Field(default_factory=dict, alias="transformConfig")
    fallback_value: Any = Field(default=None, alias="fallbackValue")
    conditions: List[FieldCondition] = Field(default_factory=list)

    @property
    def is_static(self) -> bool:
        return not self.source_id

    @property
    def is_complete(self) -> bool:
        return bool(self.source_id) or self.fallback_value is not None


# ----------------------------------------------------------------------
# Source combination
# ----------------------------------------------------------------------

class DataRelationship(WizardModel):
    id: str
    parent_source: str
    parent_key: str
    child_source: str
    foreign_key: str
    type: Literal["one-to-one", "one-to-many", "many-to-many"] = "one-to-many"
    embed_as: str = "items"
    include_orphans: bool = False

    def check(self) -> None:
        """
        Raises:
            InvalidRelationshipError: if the relationship joins a source to itself.
        """
        if self.parent_source == self.child_source:
            raise InvalidRelationshipError(
                f"relationship '{self.id}' joins source '{self.parent_source}' to itself",
                relationship_id=self.id,
            )


class DataConcatenation(WizardModel):
    id: str
    sources: List[str]
    merge_strategy: Literal["concatenate", "union", "interleave"] = "concatenate"
    deduplicate: bool = False
    deduplicate_field: Optional[str] = None

    # Structural checks live outside pydantic validators so they surface as
    # ConfigurationError subclasses rather than wrapped ValidationErrors.
    def check(self) -> None:
        if len(set(self.sources)) < 2:
            raise InvalidConcatenationError(
                f"concatenation '{self.id}' needs at least 2 distinct sources",
                concatenation_id=self.id,
            )
        if self.deduplicate and not self.deduplicate_field:
            raise InvalidConcatenationError(
                f"concatenation '{self.id}' deduplicates without deduplicate_field",
                concatenation_id=self.id,
            )


class SourceSelectionEntry(WizardModel):
    id: str
    primary_path: str = Field(default="", alias="primaryPath")


class SourceSelection(WizardModel):
    """Which sources feed the record stream, and where their items live."""

    sources: List[SourceSelectionEntry] = Field(default_factory=list)
    merge_mode: Literal["single", "combined"] = Field(default="single", alias="mergeMode")


class RSSFieldMappings(WizardModel):
    title: str = "title"
    description: str = "description"
    link: str = "link"
    pub_date: Optional[str] = Field(default=None, alias="pubDate")
    guid: Optional[str] = None
    author: Optional[str] = None
    category: Optional[str] = None


class RSSSourceMapping(WizardModel):
    source_id: str = Field(alias="sourceId")
    items_path: str = Field(default="", alias="itemsPath")
    field_mappings: RSSFieldMappings = Field(default_factory=RSSFieldMappings, alias="fieldMappings")
    enabled: bool = True


class RSSOptions(WizardModel):
    channel_title: str = Field(default="RSS Feed", alias="channelTitle")
    channel_description: str = Field(default="", alias="channelDescription")
    channel_link: str = Field(default="", alias="channelLink")
    source_mappings: List[RSSSourceMapping] = Field(default_factory=list, alias="sourceMappings")
    merge_strategy: Literal["sequential", "chronological", "interleaved", "priority"] = Field(
        default="sequential", alias="mergeStrategy"
    )
    max_items_per_source: int = Field(default=0, alias="maxItemsPerSource")
    max_total_items: int = Field(default=0, alias="maxTotalItems")


# ----------------------------------------------------------------------
# Transformations & output shape
# ----------------------------------------------------------------------

class Transformation(WizardModel):
    id: str
    type: str
    source_field: str = ""
    target_field: str = ""
    config: Dict[str, Any] = Field(default_factory=dict)


class SchemaNode(WizardModel):
    """Authoring scaffold for the output shape; mirrors the FieldMapping set."""

    name: str
    type: Literal["object", "array", "string", "number", "boolean", "null"] = "string"
    required: bool = False
    default_value: Any = Field(default=None, alias="defaultValue")
    children: List["SchemaNode"] = Field(default_factory=list)

    def leaf_paths(self, prefix: str = "") -> List[str]:
        path = f"{prefix}.{self.name}" if prefix else self.name
        if self.type == "object" and self.children:
            return [p for child in self.children for p in child.leaf_paths(path)]
        if self.type == "array" and self.children:
            return [p for child in self.children for p in child.leaf_paths(f"{path}[0]")]
        return [path]


SchemaNode.model_rebuild()


class OutputSchema(WizardModel):
    root: List[SchemaNode] = Field(default_factory=list)

    def leaf_paths(self) -> List[str]:
        return [p for node in self.root for p in node.leaf_paths()]

    def leaf_nodes(self) -> Dict[str, SchemaNode]:
        found: Dict[str, SchemaNode] = {}

        def _walk(node: SchemaNode, prefix: str) -> None:
            path = f"{prefix}.{node.name}" if prefix else node.name
            if node.type in ("object", "array") and node.children:
                child_prefix = f"{path}[0]" if node.type == "array" else path
                for child in node.children:
                    _walk(child, child_prefix)
            else:
                found[path] = node

        for node in self.root:
            _walk(node, "")
        return found

    def required_nodes(self) -> Dict[str, SchemaNode]:
        found: Dict[str, SchemaNode] = {}

        def _walk(node: SchemaNode, prefix: str) -> None:
            path = f"{prefix}.{node.name}" if prefix else node.name
            if node.required:
                found[path] = node
            child_prefix = f"{path}[0]" if node.type == "array" else path
            for child in node.children:
                _walk(child, child_prefix)

        for node in self.root:
            _walk(node, "")
        return found


class OutputWrapperConfig(WizardModel):
    enabled: bool = False
    wrapper_key: str = Field(default="data", alias="wrapperKey")
    include_metadata: bool = Field(default=False, alias="includeMetadata")
    metadata_fields: Dict[str, bool] = Field(
        default_factory=lambda: {"timestamp": True, "source": True, "count": True},
        alias="metadataFields",
    )
    custom_metadata: Dict[str, Any] = Field(default_factory=dict, alias="customMetadata")


# ----------------------------------------------------------------------
# Endpoint-level policies (stored with the endpoint, enforced elsewhere)
# ----------------------------------------------------------------------

class CacheConfig(WizardModel):
    enabled: bool = False
    ttl: int = 300


class RateLimitConfig(WizardModel):
    enabled: bool = False
    requests_per_minute: int = 60
    burst_limit: Optional[int] = None
    per_user: bool = False


class AuthConfig(WizardModel):
    required: bool = False
    type: Literal["none", "api-key", "bearer", "basic", "oauth2", "custom"] = "none"
    config: Dict[str, Any] = Field(default_factory=dict)


class EndpointConfig(WizardModel):
    """
    Complete, validated configuration for one composed endpoint.

    Built once by normalize_endpoint() from whatever shape the authoring UI
    persisted, so resolution code never has to null-chain through optional
    nesting. Keyed by (owner, slug) in the EndpointRegistry.
    """

    # Both become part of the registry file name {owner}__{slug}.yaml.
    slug: str = Field(pattern=IDENTIFIER_PATTERN)
    owner: str = Field(default="default", pattern=IDENTIFIER_PATTERN)
    name: str = ""
    description: str = ""
    status: Literal["draft", "active"] = "draft"
    output_format: Literal["json", "xml", "rss", "atom", "csv"] = "json"

    sources: List[DataSource] = Field(default_factory=list)
    source_selection: SourceSelection = Field(default_factory=SourceSelection)
    field_mappings: List[FieldMapping] = Field(default_factory=list)
    relationships: List[DataRelationship] = Field(default_factory=list)
    concatenations: List[DataConcatenation] = Field(default_factory=list)
    rss: RSSOptions = Field(default_factory=RSSOptions)
    transformations: List[Transformation] = Field(default_factory=list)
    output_schema: OutputSchema = Field(default_factory=OutputSchema)
    output_wrapper: OutputWrapperConfig = Field(default_factory=OutputWrapperConfig)

    cache: CacheConfig = Field(default_factory=CacheConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    auth: AuthConfig = Field(default_factory=AuthConfig)

    @property
    def key(self) -> tuple[str, str]:
        return (self.owner, self.slug)

    def source_map(self) -> Dict[str, DataSource]:
        return {s.id: s for s in self.sources}
