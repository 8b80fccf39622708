"""
Comparable historical quotes for a quote request.

Vector search (OpenAI embeddings + Cloudflare Vectorize) runs first; when it
is absent, failing or finds nothing above the score threshold, the most
recent quotes of the same service type are returned without scores.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Protocol

import httpx

from .config import VectorConfig
from .errors import ProviderError
from .models import IntakeDatabase, QuoteRequest, SimilarityMatch, SimilarityResult

logger = logging.getLogger(__name__)

MIN_SCORE = 0.65
VECTOR_LIMIT = 10
FALLBACK_LIMIT = 5

OPENAI_EMBEDDINGS_URL = "https://api.openai.com/v1/embeddings"
VECTORIZE_QUERY_URL = (
    "https://api.cloudflare.com/client/v4/accounts/{account_id}"
    "/vectorize/v2/indexes/{index_name}/query"
)


def build_similarity_query(request: QuoteRequest) -> str:
    """Description, service type and company joined the way quotes are indexed."""
    parts = [request.description, f"Service: {request.service_type}"]
    if request.company_name:
        parts.append(f"Company: {request.company_name}")
    return " | ".join(parts)


class VectorIndex(Protocol):
    async def query(
        self, text: str, service_type: str | None, limit: int, min_score: float
    ) -> list[tuple[str, float]]:
        """Ranked (quote id, score) pairs with score >= min_score."""
        ...


def parse_match(match: Any) -> tuple[str, float] | None:
    """(quote id, score) from a Vectorize match, or None when it is malformed."""
    if not isinstance(match, dict):
        return None
    score = match.get("score")
    if isinstance(score, bool) or not isinstance(score, int | float):
        return None
    metadata = match.get("metadata")
    quote_id = metadata.get("id") if isinstance(metadata, dict) else None
    if not quote_id:
        match_id = match.get("id")
        quote_id = match_id.removeprefix("quote:") if isinstance(match_id, str) else None
    if not isinstance(quote_id, str) or not quote_id:
        return None
    return quote_id, float(score)


class VectorizeIndex:
    """Cloudflare Vectorize over its REST API, embedding queries with OpenAI."""

    def __init__(
        self,
        account_id: str,
        index_name: str,
        api_token: str,
        embedding_api_key: str,
        embedding_model: str = "text-embedding-3-small",
        timeout_seconds: float = 10.0,
    ):
        self.account_id = account_id
        self.index_name = index_name
        self.api_token = api_token
        self.embedding_api_key = embedding_api_key
        self.embedding_model = embedding_model
        self.timeout = timeout_seconds

    async def embed(self, client: httpx.AsyncClient, text: str) -> list[float]:
        response = await client.post(
            OPENAI_EMBEDDINGS_URL,
            headers={"Authorization": f"Bearer {self.embedding_api_key}"},
            json={"model": self.embedding_model, "input": text},
        )
        if response.status_code >= 400:
            raise ProviderError(f"Embedding API error {response.status_code}")
        return response.json()["data"][0]["embedding"]

    async def query(
        self, text: str, service_type: str | None, limit: int, min_score: float
    ) -> list[tuple[str, float]]:
        url = VECTORIZE_QUERY_URL.format(account_id=self.account_id, index_name=self.index_name)
        metadata_filter = {"type": "quote"}
        if service_type:
            metadata_filter["serviceType"] = service_type

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                vector = await self.embed(client, text)
                response = await client.post(
                    url,
                    headers={"Authorization": f"Bearer {self.api_token}"},
                    json={
                        "vector": vector,
                        "topK": limit,
                        "filter": metadata_filter,
                        "returnMetadata": "all",
                    },
                )
                if response.status_code >= 400:
                    raise ProviderError(f"Vectorize error {response.status_code}")
                matches = response.json()["result"]["matches"]
                if not isinstance(matches, list):
                    raise TypeError("matches is not a list")
        except httpx.RequestError as e:
            raise ProviderError(f"Vector search unreachable: {e}") from e
        except (KeyError, IndexError, TypeError, ValueError) as e:
            raise ProviderError(f"Unexpected vector search response: {e}") from e

        hits = []
        for match in matches:
            hit = parse_match(match)
            if hit is None:
                logger.debug(f"Skipping malformed vector match: {match!r}")
            elif hit[1] >= min_score:
                hits.append(hit)
        return hits


def build_vector_index(config: VectorConfig) -> VectorizeIndex | None:
    """A VectorizeIndex, or None unless enabled and fully configured."""
    if not config.enabled:
        return None
    api_token = config.get_api_token()
    embedding_key = config.get_embedding_api_key()
    if not (config.account_id and config.index_name and api_token and embedding_key):
        logger.warning("Vector search enabled but not fully configured, using fallback only")
        return None
    return VectorizeIndex(
        account_id=config.account_id,
        index_name=config.index_name,
        api_token=api_token,
        embedding_api_key=embedding_key,
        embedding_model=config.embedding_model,
        timeout_seconds=config.timeout_seconds,
    )


# -----------------------------------------------------------------------------
# Strategies
# -----------------------------------------------------------------------------


class SimilarityStrategy(ABC):
    """One way of finding comparable quotes."""

    source: str = "base"

    @abstractmethod
    async def find(self, request: QuoteRequest, query: str) -> list[SimilarityResult] | None:
        """Return results, or None to let the next strategy try."""


class VectorSimilarityStrategy(SimilarityStrategy):
    source = "vector"

    def __init__(
        self,
        index: VectorIndex,
        db: IntakeDatabase,
        limit: int = VECTOR_LIMIT,
        min_score: float = MIN_SCORE,
    ):
        self.index = index
        self.db = db
        self.limit = limit
        self.min_score = min_score

    async def find(self, request: QuoteRequest, query: str) -> list[SimilarityResult] | None:
        try:
            hits = await self.index.query(query, request.service_type, self.limit, self.min_score)
        except ProviderError as e:
            logger.warning(f"Vector search failed for {request.request_id}: {e}")
            return None
        except Exception:
            logger.exception(f"Unexpected vector search error for {request.request_id}")
            return None

        scores: dict[str, float] = {}
        for quote_id, score in hits:
            if score >= self.min_score:
                scores[quote_id] = max(score, scores.get(quote_id, score))
        if not scores:
            return None

        quotes = self.db.get_quotes_by_ids(list(scores))
        if not quotes:
            logger.info(f"Vector hits for {request.request_id} no longer exist in the store")
            return None

        results = [SimilarityResult(quote=q, score=scores[q.quote_id]) for q in quotes]
        results.sort(key=lambda r: r.score, reverse=True)
        return results


class SameServiceTypeStrategy(SimilarityStrategy):
    source = "fallback"

    def __init__(self, db: IntakeDatabase, limit: int = FALLBACK_LIMIT):
        self.db = db
        self.limit = limit

    async def find(self, request: QuoteRequest, query: str) -> list[SimilarityResult]:
        quotes = self.db.get_quotes_by_service_type(request.service_type, limit=self.limit)
        return [SimilarityResult(quote=q, score=None) for q in quotes]


class SimilarityMatcher:
    """Runs similarity strategies in order until one answers."""

    def __init__(self, strategies: list[SimilarityStrategy]):
        self.strategies = strategies

    async def find_similar(self, request: QuoteRequest) -> SimilarityMatch:
        query = build_similarity_query(request)
        for strategy in self.strategies:
            results = await strategy.find(request, query)
            if results is not None:
                return SimilarityMatch(source=strategy.source, results=results)
        return SimilarityMatch(source=SameServiceTypeStrategy.source, results=[])


def build_similarity_matcher(
    db: IntakeDatabase, index: VectorIndex | None, config: VectorConfig
) -> SimilarityMatcher:
    strategies: list[SimilarityStrategy] = []
    if index is not None:
        strategies.append(
            VectorSimilarityStrategy(
                index, db, limit=config.max_results, min_score=config.min_score
            )
        )
    strategies.append(SameServiceTypeStrategy(db, limit=config.fallback_limit))
    return SimilarityMatcher(strategies)
