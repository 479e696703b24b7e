"""Pydantic schemas for FerresDB requests and responses.

Request models are dumped with ``exclude_none=True`` so absent optional
fields never reach the wire as ``null``. Response models are the declared
shapes every success body is validated against.
"""

from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, SecretStr

# Collection names allowed by the server
COLLECTION_NAME_PATTERN = r"^[a-zA-Z0-9_-]+$"

Filter = dict[str, Any]


class DistanceMetric(str, Enum):
    """Similarity metric of a collection."""

    COSINE = "Cosine"
    DOT_PRODUCT = "DotProduct"
    EUCLIDEAN = "Euclidean"


class _Request(BaseModel):
    """Base for outbound bodies."""

    model_config = ConfigDict(extra="forbid")

    def to_body(self) -> dict[str, Any]:
        """Serialize for the wire, omitting absent optional fields."""
        return self.model_dump(mode="json", exclude_none=True)


class _Response(BaseModel):
    """Base for inbound bodies. Unknown fields from newer servers are ignored."""

    model_config = ConfigDict(extra="ignore")


class Point(_Request):
    """An identified vector plus metadata."""

    id: str = Field(min_length=1)
    vector: list[float] = Field(min_length=1)
    metadata: dict[str, Any] = Field(default_factory=dict)


class FailedPoint(_Response):
    id: str
    reason: str


class UpsertResult(_Response):
    """Outcome of an upsert: how many points landed and which ones did not."""

    upserted: int
    failed: list[FailedPoint] = Field(default_factory=list)


class UpsertPointsRequest(_Request):
    points: list[Point]


class DeletePointsRequest(_Request):
    ids: list[str] = Field(min_length=1)


class NoQuantization(_Request):
    type: Literal["none"] = "none"


class ScalarQuantization(_Request):
    """Scalar quantization of stored vectors.

    Attributes:
        dtype: Quantized element type.
        quantile: Calibration quantile used to clip outliers (0, 1].
        always_ram: Keep quantized vectors resident in memory.
    """

    type: Literal["scalar"] = "scalar"
    dtype: Literal["int8", "uint8"] = "int8"
    quantile: float | None = Field(default=None, gt=0, le=1)
    always_ram: bool | None = None


QuantizationConfig = Annotated[
    NoQuantization | ScalarQuantization, Field(discriminator="type")
]


class TieredStorageConfig(_Request):
    """Hot/warm/cold placement policy for a collection's points."""

    enabled: bool = True
    hot_max_points: int | None = Field(default=None, ge=0)
    warm_after_seconds: int | None = Field(default=None, ge=0)
    cold_after_seconds: int | None = Field(default=None, ge=0)


class CollectionConfig(_Request):
    name: str = Field(pattern=COLLECTION_NAME_PATTERN)
    dimension: int = Field(ge=1, le=4096)
    distance: DistanceMetric
    enable_bm25: bool | None = None
    bm25_text_field: str | None = Field(default=None, min_length=1)
    quantization: QuantizationConfig | None = None
    tiered_storage: TieredStorageConfig | None = None


class Collection(_Response):
    name: str
    dimension: int
    distance: DistanceMetric
    created_at: int | None = None
    enable_bm25: bool | None = None
    bm25_text_field: str | None = None


class CollectionListItem(_Response):
    """Collection summary from the list endpoint.

    ``distance`` is only set when the server reports it; older servers omit it.
    """

    name: str
    dimension: int
    num_points: int
    created_at: int
    distance: DistanceMetric | None = None


class ListCollectionsResponse(_Response):
    collections: list[CollectionListItem]


class TierInfo(_Response):
    tier: str
    num_points: int
    memory_bytes: int | None = None


class TierStats(_Response):
    collection: str
    tiers: list[TierInfo]


class SearchRequest(_Request):
    vector: list[float] = Field(min_length=1)
    limit: int = Field(ge=1)
    filter: Filter | None = None
    budget_ms: int | None = Field(default=None, gt=0)


class SearchResult(_Response):
    id: str
    score: float
    metadata: dict[str, Any]


class SearchResponse(_Response):
    results: list[SearchResult]
    took_ms: int


class WeightedFusion(_Request):
    """Linear combination: ``alpha * vector + (1 - alpha) * bm25``."""

    type: Literal["weighted"] = "weighted"
    alpha: float = Field(default=0.5, ge=0, le=1)


class RRFFusion(_Request):
    """Reciprocal rank fusion with smoothing constant ``k``."""

    type: Literal["rrf"] = "rrf"
    k: int = Field(default=60, ge=1)


FusionStrategy = Annotated[WeightedFusion | RRFFusion, Field(discriminator="type")]


class HybridSearchRequest(_Request):
    text: str = Field(min_length=1)
    vector: list[float] = Field(min_length=1)
    limit: int = Field(ge=1)
    filter: Filter | None = None
    fusion: FusionStrategy | None = None


class HybridSearchResult(_Response):
    id: str
    score: float
    metadata: dict[str, Any]
    vector_score: float | None = None
    bm25_score: float | None = None


class HybridSearchResponse(_Response):
    results: list[HybridSearchResult]
    took_ms: int


class EstimateSearchRequest(_Request):
    limit: int = Field(ge=1)
    filter: Filter | None = None
    include_history: bool | None = None


class CostBreakdown(_Response):
    index_scan_cost: float
    filter_cost: float
    hydration_cost: float
    network_overhead: float


class QueryCostEstimate(_Response):
    estimated_ms: float
    confidence_range: tuple[float, float]
    estimated_memory_bytes: int
    estimated_nodes_visited: int
    is_expensive: bool
    recommendations: list[str]
    breakdown: CostBreakdown


class HistoricalLatency(_Response):
    p50_ms: float
    p95_ms: float
    p99_ms: float
    avg_ms: float
    total_queries: int


class EstimateSearchResponse(QueryCostEstimate):
    """Cost estimate, with observed latencies when history was requested."""

    historical_latency: HistoricalLatency | None = None


class ExplainSearchRequest(_Request):
    vector: list[float] = Field(min_length=1)
    limit: int = Field(ge=1)
    filter: Filter | None = None


class ConditionResult(_Response):
    field: str
    operator: str
    expected: Any = None
    actual: Any = None
    passed: bool


class FilterExplanation(_Response):
    conditions: list[ConditionResult]
    passed: bool


class ExplainResult(_Response):
    id: str
    score: float
    distance_metric: str
    raw_distance: float
    score_breakdown: dict[str, float]
    filter_evaluation: FilterExplanation | None = None
    rank_before_filter: int
    rank_after_filter: int


class IndexStats(_Response):
    total_points: int
    hnsw_layers: int
    ef_search_used: int
    tombstones_skipped: int


class SearchExplanation(_Response):
    query_vector_norm: float
    distance_metric: str
    candidates_scanned: int
    candidates_after_filter: int
    results: list[ExplainResult]
    index_stats: IndexStats


class ReindexState(str, Enum):
    """Reindex job lifecycle: queued -> building -> swapping -> completed.

    ``failed`` can be reached from any non-terminal state.
    """

    QUEUED = "queued"
    BUILDING = "building"
    SWAPPING = "swapping"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ReindexState.COMPLETED, ReindexState.FAILED)


class ReindexJob(_Response):
    job_id: str
    collection: str
    state: ReindexState
    progress: float | None = None
    created_at: int | None = None
    started_at: int | None = None
    finished_at: int | None = None
    error: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal


class ListReindexJobsResponse(_Response):
    jobs: list[ReindexJob]


class CreateKeyRequest(_Request):
    name: str = Field(min_length=1)


class ApiKeyInfo(_Response):
    """Stored key metadata. The raw secret is never listed."""

    id: int
    name: str
    key_prefix: str
    created_at: int


class CreatedApiKey(ApiKeyInfo):
    """Creation response; the only place the raw secret is returned."""

    key: SecretStr
