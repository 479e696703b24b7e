"""Async Python client for the FerresDB vector database."""

from ferresdb.client import FerresDBClient
from ferresdb.config import ClientConfig, Settings, get_settings
from ferresdb.exceptions import (
    ClientConfigurationError,
    ErrorKind,
    FerresDBError,
    RealtimeStateError,
    ResponseValidationError,
)
from ferresdb.realtime import RealtimeClient
from ferresdb.schemas import (
    ApiKeyInfo,
    Collection,
    CollectionListItem,
    CreatedApiKey,
    DistanceMetric,
    EstimateSearchResponse,
    HybridSearchResult,
    NoQuantization,
    Point,
    ReindexJob,
    ReindexState,
    RRFFusion,
    ScalarQuantization,
    SearchExplanation,
    SearchResult,
    TieredStorageConfig,
    TierStats,
    UpsertResult,
    WeightedFusion,
)

__version__ = "0.1.0"

__all__ = [
    "ApiKeyInfo",
    "ClientConfig",
    "ClientConfigurationError",
    "Collection",
    "CollectionListItem",
    "CreatedApiKey",
    "DistanceMetric",
    "ErrorKind",
    "EstimateSearchResponse",
    "FerresDBClient",
    "FerresDBError",
    "HybridSearchResult",
    "NoQuantization",
    "Point",
    "RRFFusion",
    "RealtimeClient",
    "RealtimeStateError",
    "ReindexJob",
    "ReindexState",
    "ResponseValidationError",
    "ScalarQuantization",
    "SearchExplanation",
    "SearchResult",
    "Settings",
    "TierStats",
    "TieredStorageConfig",
    "UpsertResult",
    "WeightedFusion",
    "get_settings",
]
