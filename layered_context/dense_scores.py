"""
Dense (embedding-based) relevance scores.

The retriever treats dense scoring as an optional capability. Credentials
for the embedding service are resolved through an explicit, ordered chain of
resolvers injected at construction time:

    explicit -> environment -> auth session -> settings -> none
"""

import asyncio
import inspect
import logging
import math
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple, Union

import aiohttp

from .errors import DenseScoreError
from .text_utils import clamp01, normalize_whitespace

logger = logging.getLogger(__name__)

DEFAULT_REQUEST_TIMEOUT_MS = 1200
DEFAULT_EMBEDDING_ENDPOINTS = ("/v1/embeddings", "/embeddings")


@dataclass(frozen=True)
class DenseProviderConfig:
    base_url: Optional[str]
    api_key: Optional[str]
    source: str = "unknown"

    @property
    def is_complete(self) -> bool:
        return bool(self.base_url) and bool(self.api_key)


@dataclass(frozen=True)
class DenseScoreCandidate:
    node_id: str
    content: str


# ===== Config resolvers =====

class DenseConfigResolver(ABC):
    """One source of embedding-service credentials."""

    name = "resolver"

    @abstractmethod
    async def resolve(self) -> Optional[DenseProviderConfig]:
        """Return whatever this source knows, or None."""
        pass


class StaticConfigResolver(DenseConfigResolver):
    """Credentials passed explicitly by the caller."""

    name = "explicit"

    def __init__(self, base_url: Optional[str] = None, api_key: Optional[str] = None):
        self.base_url = base_url
        self.api_key = api_key

    async def resolve(self) -> Optional[DenseProviderConfig]:
        if not self.base_url and not self.api_key:
            return None
        return DenseProviderConfig(self.base_url, self.api_key, self.name)


class EnvironmentConfigResolver(DenseConfigResolver):
    name = "environment"

    def __init__(self,
                 base_url_var: str = "LAYERED_CONTEXT_DENSE_BASE_URL",
                 api_key_var: str = "LAYERED_CONTEXT_DENSE_API_KEY",
                 environ: Optional[Dict[str, str]] = None):
        self.base_url_var = base_url_var
        self.api_key_var = api_key_var
        self._environ = environ

    async def resolve(self) -> Optional[DenseProviderConfig]:
        environ = self._environ if self._environ is not None else os.environ
        base_url = (environ.get(self.base_url_var) or "").strip() or None
        api_key = (environ.get(self.api_key_var) or "").strip() or None
        if not base_url and not api_key:
            return None
        return DenseProviderConfig(base_url, api_key, self.name)


AuthLookup = Callable[[], Union[Optional[str], Awaitable[Optional[str]]]]


class AuthSessionConfigResolver(DenseConfigResolver):
    """
    API key from the host's authenticated session.

    ``lookup`` may be sync or async and returns the key or None; errors are
    logged and treated as "no key".
    """

    name = "auth_session"

    def __init__(self, lookup: AuthLookup, base_url: Optional[str] = None):
        self.lookup = lookup
        self.base_url = base_url

    async def resolve(self) -> Optional[DenseProviderConfig]:
        try:
            result = self.lookup()
            if inspect.isawaitable(result):
                result = await result
        except Exception as e:
            logger.warning(f"Auth session lookup for dense scoring failed: {e}")
            return None
        api_key = (result or "").strip() or None
        if not api_key and not self.base_url:
            return None
        return DenseProviderConfig(self.base_url, api_key, self.name)


class SettingsConfigResolver(DenseConfigResolver):
    """Credentials persisted in ``LayeredContextSettings``."""

    name = "settings"

    def __init__(self, settings: Any):
        self.settings = settings

    async def resolve(self) -> Optional[DenseProviderConfig]:
        base_url = getattr(self.settings, "dense_base_url", None)
        api_key = getattr(self.settings, "dense_api_key", None)
        if not base_url and not api_key:
            return None
        return DenseProviderConfig(base_url, api_key, self.name)


class DenseConfigResolverChain:
    """
    Try resolvers in order; the first one yielding an API key wins.

    The base URL comes from the winning resolver, or from the first resolver
    in the chain that knows one.
    """

    def __init__(self, resolvers: Sequence[DenseConfigResolver]):
        self.resolvers = list(resolvers)

    async def resolve(self) -> Optional[DenseProviderConfig]:
        fallback_base_url: Optional[str] = None
        for resolver in self.resolvers:
            config = await resolver.resolve()
            if config is None:
                continue
            if config.base_url and fallback_base_url is None:
                fallback_base_url = config.base_url
            if config.api_key:
                base_url = config.base_url or fallback_base_url
                logger.debug(f"Dense provider credentials resolved from '{resolver.name}'")
                return DenseProviderConfig(base_url, config.api_key, resolver.name)
        return None


# ===== Providers =====

class DenseScoreProvider(ABC):
    """
    Embedding-based relevance scorer.

    Attributes:
        request_timeout_ms: Upper bound for one ``get_dense_scores`` call
        strict_mode: Whether failures should propagate out of retrieval
    """

    request_timeout_ms: int = DEFAULT_REQUEST_TIMEOUT_MS
    strict_mode: bool = False

    @abstractmethod
    async def get_dense_scores(self, query: str,
                               candidates: Sequence[DenseScoreCandidate]) -> Dict[str, float]:
        """
        Score candidates against the query.

        Returns:
            Mapping of node id to a score in [0, 1]; candidates without a
            score are simply absent

        Raises:
            DenseScoreError: On transport or protocol failure
        """
        pass


def cosine_similarity(left: Sequence[float], right: Sequence[float]) -> float:
    dimensions = min(len(left), len(right))
    if dimensions == 0:
        return 0.0
    dot = left_norm = right_norm = 0.0
    for i in range(dimensions):
        dot += left[i] * right[i]
        left_norm += left[i] * left[i]
        right_norm += right[i] * right[i]
    if left_norm == 0 or right_norm == 0:
        return 0.0
    return dot / (math.sqrt(left_norm) * math.sqrt(right_norm))


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else None
    if isinstance(value, str) and value.strip():
        try:
            number = float(value)
        except ValueError:
            return None
        return number if math.isfinite(number) else None
    return None


def _as_vector(value: Any) -> Optional[List[float]]:
    if not isinstance(value, list) or not value:
        return None
    vector = []
    for item in value:
        number = _as_number(item)
        if number is None:
            return None
        vector.append(number)
    return vector


def _extract_vector(item: Any) -> Optional[List[float]]:
    direct = _as_vector(item)
    if direct:
        return direct
    if not isinstance(item, dict):
        return None
    for source in (item, item.get("data")):
        if not isinstance(source, dict):
            continue
        for key in ("embedding", "vector", "values"):
            vector = _as_vector(source.get(key))
            if vector:
                return vector
    return None


def parse_embedding_items(payload: Any) -> List[Tuple[int, List[float]]]:
    """
    Pull ``(index, vector)`` pairs out of an embeddings response.

    Accepts OpenAI-style ``{"data": [{"embedding": [...], "index": 0}]}`` and
    the common variants (``embeddings``/``results`` lists, nested ``data``,
    bare lists of vectors). Items are returned sorted by index.
    """
    arrays: List[list] = []
    if isinstance(payload, list):
        arrays.append(payload)
    if isinstance(payload, dict):
        for key in ("data", "embeddings", "results"):
            if isinstance(payload.get(key), list):
                arrays.append(payload[key])
        nested = payload.get("data")
        if isinstance(nested, dict):
            for key in ("data", "embeddings", "results"):
                if isinstance(nested.get(key), list):
                    arrays.append(nested[key])

    source_items = next((array for array in arrays if array), None)
    if not source_items:
        return []

    parsed = []
    for position, raw_item in enumerate(source_items):
        vector = _extract_vector(raw_item)
        if not vector:
            continue
        index = position
        if isinstance(raw_item, dict):
            for key in ("index", "input_index", "position"):
                raw_index = _as_number(raw_item.get(key))
                if raw_index is not None and raw_index >= 0:
                    index = int(raw_index)
                    break
        parsed.append((index, vector))

    parsed.sort(key=lambda item: item[0])
    return parsed


class HttpDenseScoreProvider(DenseScoreProvider):
    """
    Dense scores from an OpenAI-compatible embeddings endpoint.

    The query and every candidate are embedded in one request; each
    candidate's score is its cosine similarity to the query mapped from
    [-1, 1] to [0, 1].
    """

    def __init__(self,
                 resolver: DenseConfigResolverChain,
                 request_timeout_ms: int = DEFAULT_REQUEST_TIMEOUT_MS,
                 strict_mode: bool = False,
                 endpoints: Sequence[str] = DEFAULT_EMBEDDING_ENDPOINTS,
                 model: Optional[str] = None):
        self.resolver = resolver
        self.request_timeout_ms = int(request_timeout_ms)
        self.strict_mode = bool(strict_mode)
        self.endpoints = list(endpoints)
        self.model = model
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    async def get_dense_scores(self, query: str,
                               candidates: Sequence[DenseScoreCandidate]) -> Dict[str, float]:
        normalized_query = normalize_whitespace(query)
        if not candidates or not normalized_query:
            return {}

        config = await self.resolver.resolve()
        if config is None or not config.is_complete:
            self.logger.debug("Dense scoring skipped: no embedding service configured")
            return {}

        contents = [normalize_whitespace(candidate.content) for candidate in candidates]
        try:
            items = await self._request_embeddings(config, [normalized_query] + contents)
        except asyncio.TimeoutError as e:
            raise DenseScoreError(f"Embedding request timed out after {self.request_timeout_ms}ms") from e
        except aiohttp.ClientError as e:
            raise DenseScoreError(f"Embedding request failed: {e}") from e

        vectors = {index: vector for index, vector in items}
        query_vector = vectors.get(0)
        if query_vector is None:
            raise DenseScoreError("Embedding response did not include the query vector")

        scores: Dict[str, float] = {}
        for position, candidate in enumerate(candidates, start=1):
            vector = vectors.get(position)
            if vector is None:
                continue
            cosine = cosine_similarity(query_vector, vector)
            scores[candidate.node_id] = clamp01((cosine + 1.0) / 2.0)
        return scores

    async def _request_embeddings(self, config: DenseProviderConfig,
                                  inputs: List[str]) -> List[Tuple[int, List[float]]]:
        """POST to each endpoint in turn until one returns usable embeddings."""
        body: Dict[str, Any] = {"input": inputs}
        if self.model:
            body["model"] = self.model
        headers = {
            "Authorization": f"Bearer {config.api_key}",
            "Content-Type": "application/json",
        }
        timeout = aiohttp.ClientTimeout(total=self.request_timeout_ms / 1000.0)
        base_url = config.base_url.rstrip("/")
        failures = []

        async with aiohttp.ClientSession(timeout=timeout) as session:
            for endpoint in self.endpoints:
                url = f"{base_url}{endpoint}"
                async with session.post(url, json=body, headers=headers) as response:
                    if response.status >= 400:
                        failures.append(f"{endpoint}: HTTP {response.status}")
                        continue
                    try:
                        payload = await response.json(content_type=None)
                    except ValueError:
                        failures.append(f"{endpoint}: invalid JSON")
                        continue
                items = parse_embedding_items(payload)
                if items:
                    return items
                failures.append(f"{endpoint}: no embeddings in response")

        raise DenseScoreError(f"No embedding endpoint succeeded ({'; '.join(failures)})")


def build_default_resolver_chain(settings: Any = None,
                                 base_url: Optional[str] = None,
                                 api_key: Optional[str] = None,
                                 auth_lookup: Optional[AuthLookup] = None) -> DenseConfigResolverChain:
    """Assemble the standard explicit -> env -> auth -> settings chain."""
    resolvers: List[DenseConfigResolver] = [
        StaticConfigResolver(base_url=base_url, api_key=api_key),
        EnvironmentConfigResolver(),
    ]
    if auth_lookup is not None:
        resolvers.append(AuthSessionConfigResolver(auth_lookup))
    if settings is not None:
        resolvers.append(SettingsConfigResolver(settings))
    return DenseConfigResolverChain(resolvers)
