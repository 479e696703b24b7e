"""Async client for the FerresDB REST API."""

import asyncio
from collections.abc import Sequence
from types import TracebackType
from typing import Any, TypeVar
from urllib.parse import quote

import httpx
import structlog
from pydantic import BaseModel, SecretStr, TypeAdapter, ValidationError

from ferresdb.batching import MAX_BATCH_SIZE, upsert_in_batches
from ferresdb.config import ClientConfig, Settings, get_settings
from ferresdb.exceptions import (
    FerresDBError,
    ResponseValidationError,
)
from ferresdb.observability import add_span_attributes, traced
from ferresdb.schemas import (
    ApiKeyInfo,
    Collection,
    CollectionConfig,
    CollectionListItem,
    CreatedApiKey,
    CreateKeyRequest,
    DeletePointsRequest,
    DistanceMetric,
    EstimateSearchRequest,
    EstimateSearchResponse,
    ExplainSearchRequest,
    Filter,
    FusionStrategy,
    HybridSearchRequest,
    HybridSearchResponse,
    HybridSearchResult,
    ListCollectionsResponse,
    ListReindexJobsResponse,
    Point,
    QuantizationConfig,
    ReindexJob,
    SearchExplanation,
    SearchRequest,
    SearchResponse,
    SearchResult,
    TieredStorageConfig,
    TierStats,
    UpsertPointsRequest,
    UpsertResult,
)
from ferresdb.transport import RetryingTransport, Sleep

logger = structlog.get_logger()

M = TypeVar("M", bound=BaseModel)

API_PREFIX = "/api/v1"

_API_KEY_LIST = TypeAdapter(list[ApiKeyInfo])


def _request_body(model: type[BaseModel], **fields: Any) -> dict[str, Any]:
    """Validate request fields locally and serialize them for the wire.

    Raises:
        FerresDBError: ``invalid_payload`` when validation fails; nothing is sent.
    """
    try:
        return model(**fields).to_body()  # type: ignore[attr-defined]
    except ValidationError as e:
        raise FerresDBError.invalid_payload(_describe(e)) from e


def _parse(model: type[M], data: Any) -> M:
    """Validate a success body against its declared shape."""
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise ResponseValidationError(
            f"Unexpected {model.__name__} response: {_describe(e)}",
            model=model.__name__,
        ) from e


def _describe(error: ValidationError) -> str:
    details = "; ".join(
        f"{'.'.join(str(part) for part in err['loc']) or 'body'}: {err['msg']}"
        for err in error.errors()
    )
    return details or str(error)


def _coerce_points(points: Sequence[Point | dict[str, Any]]) -> list[Point]:
    try:
        return [p if isinstance(p, Point) else Point.model_validate(p) for p in points]
    except ValidationError as e:
        raise FerresDBError.invalid_payload(_describe(e)) from e


class FerresDBClient:
    """Client for a FerresDB server.

    One method per remote capability. Every method validates its input
    locally, sends the request through a ``RetryingTransport`` and validates
    the response before returning a typed model.

    Example:
        async with FerresDBClient("http://localhost:8080", api_key="sk-...") as db:
            await db.create_collection("docs", 384, DistanceMetric.COSINE)
            hits = await db.search("docs", vector, limit=5)
    """

    def __init__(
        self,
        base_url: str,
        *,
        api_key: str | SecretStr | None = None,
        timeout_seconds: float = 30.0,
        max_retries: int = 3,
        retry_delay_seconds: float = 1.0,
        circuit_breaker_fail_max: int | None = None,
        circuit_breaker_timeout_seconds: float = 60.0,
        http_transport: httpx.AsyncBaseTransport | None = None,
        sleep: Sleep | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            base_url: Server address, e.g. "http://localhost:8080".
            api_key: API key sent as ``Authorization: Bearer``.
            timeout_seconds: Per-call timeout.
            max_retries: Retries after the first attempt for 5xx/connection failures.
            retry_delay_seconds: Initial backoff delay, doubled on each retry.
            circuit_breaker_fail_max: Consecutive failures before the breaker
                opens. None disables the breaker.
            circuit_breaker_timeout_seconds: How long the breaker stays open.
            http_transport: Optional httpx transport, mainly for tests.
            sleep: Awaitable used for backoff and polling delays.

        Raises:
            ClientConfigurationError: If the configuration is invalid.
        """
        config = ClientConfig.build(
            base_url=base_url,
            api_key=api_key,
            timeout_seconds=timeout_seconds,
            max_retries=max_retries,
            retry_delay_seconds=retry_delay_seconds,
            circuit_breaker_fail_max=circuit_breaker_fail_max,
            circuit_breaker_timeout_seconds=circuit_breaker_timeout_seconds,
        )
        self._setup(config, http_transport, sleep)

    def _setup(
        self,
        config: ClientConfig,
        http_transport: httpx.AsyncBaseTransport | None,
        sleep: Sleep | None,
    ) -> None:
        self._config = config
        self._sleep: Sleep = sleep or asyncio.sleep
        self._transport = RetryingTransport(
            config, http_transport=http_transport, sleep=self._sleep
        )

    @classmethod
    def from_config(
        cls,
        config: ClientConfig,
        *,
        http_transport: httpx.AsyncBaseTransport | None = None,
        sleep: Sleep | None = None,
    ) -> "FerresDBClient":
        """Create a client from an already validated configuration."""
        client = cls.__new__(cls)
        client._setup(config, http_transport, sleep)
        return client

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "FerresDBClient":
        """Create a client from ``FERRESDB_*`` environment settings."""
        settings = settings or get_settings()
        return cls.from_config(settings.to_client_config())

    @property
    def config(self) -> ClientConfig:
        return self._config

    @traced("ferresdb.create_collection")
    async def create_collection(
        self,
        name: str,
        dimension: int,
        distance: DistanceMetric | str,
        *,
        enable_bm25: bool | None = None,
        bm25_text_field: str | None = None,
        quantization: QuantizationConfig | None = None,
        tiered_storage: TieredStorageConfig | None = None,
    ) -> Collection:
        """Create a new collection.

        Args:
            name: Collection name (letters, digits, hyphens, underscores).
            dimension: Vector dimension (1-4096).
            distance: Similarity metric.
            enable_bm25: Build a BM25 index, required for hybrid search.
            bm25_text_field: Metadata key indexed by BM25 (server default "text").
            quantization: ``NoQuantization`` or ``ScalarQuantization``.
            tiered_storage: Hot/warm/cold placement policy.

        Returns:
            The created collection.

        Raises:
            FerresDBError: ``already_exists``, ``invalid_dimension`` or
                ``invalid_payload``.
        """
        body = _request_body(
            CollectionConfig,
            name=name,
            dimension=dimension,
            distance=distance,
            enable_bm25=enable_bm25,
            bm25_text_field=bm25_text_field,
            quantization=quantization,
            tiered_storage=tiered_storage,
        )
        data = await self._transport.execute(
            "POST", f"{API_PREFIX}/collections", json=body
        )
        collection = _parse(Collection, data)
        logger.info(
            "ferresdb_collection_created",
            collection=collection.name,
            dimension=collection.dimension,
            distance=collection.distance.value,
        )
        return collection

    @traced("ferresdb.list_collections")
    async def list_collections(self) -> list[CollectionListItem]:
        """List collections with point counts and creation timestamps.

        ``distance`` is ``None`` on items from servers that do not report it.
        """
        data = await self._transport.execute("GET", f"{API_PREFIX}/collections")
        return _parse(ListCollectionsResponse, data).collections

    @traced("ferresdb.get_collection")
    async def get_collection(self, name: str) -> Collection:
        """Fetch a single collection.

        Raises:
            FerresDBError: ``not_found`` if the collection does not exist.
        """
        data = await self._transport.execute("GET", self._collection_path(name))
        return _parse(Collection, data)

    @traced("ferresdb.delete_collection")
    async def delete_collection(self, name: str) -> None:
        """Delete a collection and all of its points."""
        await self._transport.execute("DELETE", self._collection_path(name))
        logger.info("ferresdb_collection_deleted", collection=name)

    @traced("ferresdb.get_tiers")
    async def get_tiers(self, name: str) -> TierStats:
        """Report how a collection's points are spread across storage tiers."""
        data = await self._transport.execute(
            "GET", self._collection_path(name, "tiers")
        )
        return _parse(TierStats, data)

    @traced("ferresdb.upsert_points")
    async def upsert_points(
        self,
        collection: str,
        points: Sequence[Point | dict[str, Any]],
        *,
        timeout_seconds: float | None = None,
    ) -> UpsertResult:
        """Insert or update points.

        Lists larger than ``MAX_BATCH_SIZE`` (1000) are split into sequential
        batches; results are aggregated. A failing batch aborts the rest, and
        batches already written stay written.

        Args:
            collection: Collection name.
            points: Points, as ``Point`` models or plain dicts.
            timeout_seconds: Per-request timeout for each batch; the client
                default when omitted.

        Returns:
            Upserted count and per-point failures.
        """
        validated = _coerce_points(points)
        add_span_attributes(
            {"ferresdb.collection": collection, "ferresdb.point_count": len(validated)}
        )

        async def write_batch(batch: list[Point]) -> UpsertResult:
            body = UpsertPointsRequest(points=batch).to_body()
            data = await self._transport.execute(
                "POST",
                self._collection_path(collection, "points"),
                json=body,
                timeout=timeout_seconds,
            )
            return _parse(UpsertResult, data)

        return await upsert_in_batches(write_batch, validated, max_size=MAX_BATCH_SIZE)

    @traced("ferresdb.delete_points")
    async def delete_points(self, collection: str, ids: Sequence[str]) -> None:
        """Delete points by id.

        Raises:
            FerresDBError: ``invalid_payload`` for an empty id list, before any
                request is made.
        """
        if not ids:
            raise FerresDBError.invalid_payload("ids cannot be empty")

        body = _request_body(DeletePointsRequest, ids=list(ids))
        await self._transport.execute(
            "DELETE", self._collection_path(collection, "points"), json=body
        )
        logger.info("ferresdb_points_deleted", collection=collection, count=len(ids))

    @traced("ferresdb.search")
    async def search(
        self,
        collection: str,
        vector: Sequence[float],
        *,
        limit: int = 10,
        filter: Filter | None = None,  # noqa: A002
        budget_ms: int | None = None,
        timeout_seconds: float | None = None,
    ) -> list[SearchResult]:
        """Search for the nearest points.

        Args:
            collection: Collection name.
            vector: Query vector.
            limit: Maximum results.
            filter: Metadata equality filter.
            budget_ms: Latency budget; the server rejects queries estimated to
                exceed it.
            timeout_seconds: Per-request timeout; the client default when omitted.

        Returns:
            Results ordered by similarity.

        Raises:
            FerresDBError: ``budget_exceeded`` (with ``estimate``) when the query
                is estimated to exceed ``budget_ms``.
        """
        body = _request_body(
            SearchRequest,
            vector=list(vector),
            limit=limit,
            filter=filter,
            budget_ms=budget_ms,
        )
        data = await self._transport.execute(
            "POST",
            self._collection_path(collection, "search"),
            json=body,
            timeout=timeout_seconds,
        )
        response = _parse(SearchResponse, data)
        add_span_attributes(
            {
                "ferresdb.result_count": len(response.results),
                "ferresdb.took_ms": response.took_ms,
            }
        )
        return response.results

    @traced("ferresdb.estimate_search_cost")
    async def estimate_search_cost(
        self,
        collection: str,
        *,
        limit: int = 10,
        filter: Filter | None = None,  # noqa: A002
        include_history: bool | None = None,
    ) -> EstimateSearchResponse:
        """Estimate the cost of a search without running it.

        ``historical_latency`` is only present when ``include_history`` is set
        and the server has history for the collection.
        """
        body = _request_body(
            EstimateSearchRequest,
            limit=limit,
            filter=filter,
            include_history=include_history,
        )
        data = await self._transport.execute(
            "POST", self._collection_path(collection, "search", "estimate"), json=body
        )
        return _parse(EstimateSearchResponse, data)

    @traced("ferresdb.explain_search")
    async def explain_search(
        self,
        collection: str,
        vector: Sequence[float],
        *,
        limit: int = 10,
        filter: Filter | None = None,  # noqa: A002
    ) -> SearchExplanation:
        """Run a search and return per-result scoring and filter diagnostics."""
        body = _request_body(
            ExplainSearchRequest, vector=list(vector), limit=limit, filter=filter
        )
        data = await self._transport.execute(
            "POST", self._collection_path(collection, "search", "explain"), json=body
        )
        return _parse(SearchExplanation, data)

    @traced("ferresdb.hybrid_search")
    async def hybrid_search(
        self,
        collection: str,
        text: str,
        vector: Sequence[float],
        *,
        limit: int = 10,
        filter: Filter | None = None,  # noqa: A002
        fusion: FusionStrategy | None = None,
        timeout_seconds: float | None = None,
    ) -> list[HybridSearchResult]:
        """Combine BM25 keyword relevance with vector similarity.

        The collection must have been created with ``enable_bm25=True``; the
        server enforces this.

        Args:
            collection: Collection name.
            text: Keyword query.
            vector: Query vector.
            limit: Maximum results.
            filter: Metadata equality filter.
            fusion: ``WeightedFusion`` (alpha, default 0.5) or ``RRFFusion``
                (k, default 60). Server default when omitted.
            timeout_seconds: Per-request timeout; the client default when omitted.
        """
        body = _request_body(
            HybridSearchRequest,
            text=text,
            vector=list(vector),
            limit=limit,
            filter=filter,
            fusion=fusion,
        )
        data = await self._transport.execute(
            "POST",
            self._collection_path(collection, "search", "hybrid"),
            json=body,
            timeout=timeout_seconds,
        )
        return _parse(HybridSearchResponse, data).results

    @traced("ferresdb.start_reindex")
    async def start_reindex(self, collection: str) -> ReindexJob:
        """Start rebuilding a collection's index in the background.

        Raises:
            FerresDBError: ``already_exists`` if a reindex is already active.
        """
        data = await self._transport.execute(
            "POST", self._collection_path(collection, "reindex")
        )
        job = _parse(ReindexJob, data)
        logger.info(
            "ferresdb_reindex_started",
            collection=collection,
            job_id=job.job_id,
            state=job.state.value,
        )
        return job

    @traced("ferresdb.get_reindex_job")
    async def get_reindex_job(self, collection: str, job_id: str) -> ReindexJob:
        data = await self._transport.execute(
            "GET", self._collection_path(collection, "reindex", job_id)
        )
        return _parse(ReindexJob, data)

    @traced("ferresdb.list_reindex_jobs")
    async def list_reindex_jobs(self, collection: str) -> list[ReindexJob]:
        data = await self._transport.execute(
            "GET", self._collection_path(collection, "reindex")
        )
        return _parse(ListReindexJobsResponse, data).jobs

    async def wait_for_reindex(
        self,
        collection: str,
        job_id: str,
        *,
        poll_interval_seconds: float = 1.0,
    ) -> ReindexJob:
        """Poll a reindex job until it completes or fails.

        Returns:
            The job in its terminal state. A failed job is returned, not raised;
            check ``job.state`` and ``job.error``.
        """
        while True:
            job = await self.get_reindex_job(collection, job_id)
            if job.is_terminal:
                return job
            logger.debug(
                "ferresdb_reindex_poll",
                collection=collection,
                job_id=job_id,
                state=job.state.value,
                progress=job.progress,
            )
            await self._sleep(poll_interval_seconds)

    @traced("ferresdb.create_key")
    async def create_key(self, name: str) -> CreatedApiKey:
        """Create an API key.

        The raw secret is only available on the returned object.

        Raises:
            FerresDBError: ``invalid_payload`` for an empty name, before any
                request is made.
        """
        trimmed = name.strip() if name else ""
        if not trimmed:
            raise FerresDBError.invalid_payload("name cannot be empty")

        body = _request_body(CreateKeyRequest, name=trimmed)
        data = await self._transport.execute("POST", f"{API_PREFIX}/keys", json=body)
        created = _parse(CreatedApiKey, data)
        logger.info(
            "ferresdb_api_key_created",
            key_id=created.id,
            key_prefix=created.key_prefix,
        )
        return created

    @traced("ferresdb.list_keys")
    async def list_keys(self) -> list[ApiKeyInfo]:
        """List API keys. Only metadata is returned, never secrets."""
        data = await self._transport.execute("GET", f"{API_PREFIX}/keys")
        try:
            return _API_KEY_LIST.validate_python(data)
        except ValidationError as e:
            raise ResponseValidationError(
                f"Unexpected ApiKeyInfo list response: {_describe(e)}",
                model="list[ApiKeyInfo]",
            ) from e

    @traced("ferresdb.delete_key")
    async def delete_key(self, key_id: int) -> None:
        await self._transport.execute("DELETE", f"{API_PREFIX}/keys/{key_id}")
        logger.info("ferresdb_api_key_deleted", key_id=key_id)

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._transport.aclose()

    async def __aenter__(self) -> "FerresDBClient":
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()

    @staticmethod
    def _collection_path(name: str, *parts: str) -> str:
        segments = [quote(name, safe="")]
        segments.extend(quote(part, safe="") for part in parts)
        return f"{API_PREFIX}/collections/" + "/".join(segments)
