import asyncio

import pytest
from unittest.mock import AsyncMock

import aiohttp

from layered_context.dense_scores import (
    AuthSessionConfigResolver,
    DenseConfigResolverChain,
    DenseProviderConfig,
    DenseScoreCandidate,
    EnvironmentConfigResolver,
    HttpDenseScoreProvider,
    SettingsConfigResolver,
    StaticConfigResolver,
    build_default_resolver_chain,
    cosine_similarity,
    parse_embedding_items,
)
from layered_context.errors import DenseScoreError

CANDIDATES = [
    DenseScoreCandidate(node_id="node_a", content="kubernetes upgrade"),
    DenseScoreCandidate(node_id="node_b", content="tomato garden"),
    DenseScoreCandidate(node_id="node_c", content="lisbon trip"),
]


class _Settings:
    def __init__(self, dense_base_url=None, dense_api_key=None):
        self.dense_base_url = dense_base_url
        self.dense_api_key = dense_api_key


# --- Resolvers ---

@pytest.mark.asyncio
async def test_chain_first_api_key_wins():
    chain = DenseConfigResolverChain([
        StaticConfigResolver(),
        EnvironmentConfigResolver(environ={"LAYERED_CONTEXT_DENSE_API_KEY": "env-key"}),
        SettingsConfigResolver(_Settings("https://settings.example", "settings-key")),
    ])

    config = await chain.resolve()

    assert config.api_key == "env-key"
    assert config.source == "environment"
    # the environment knew no base URL, and no earlier resolver did either
    assert config.base_url is None
    assert not config.is_complete


@pytest.mark.asyncio
async def test_chain_base_url_from_earlier_resolver():
    chain = DenseConfigResolverChain([
        StaticConfigResolver(base_url="https://explicit.example"),
        EnvironmentConfigResolver(environ={}),
        AuthSessionConfigResolver(lambda: "session-key"),
    ])

    config = await chain.resolve()

    assert config == DenseProviderConfig("https://explicit.example", "session-key", "auth_session")
    assert config.is_complete


@pytest.mark.asyncio
async def test_chain_explicit_beats_everything():
    chain = build_default_resolver_chain(
        settings=_Settings("https://settings.example", "settings-key"),
        base_url="https://explicit.example",
        api_key="explicit-key",
    )

    config = await chain.resolve()

    assert config.api_key == "explicit-key"
    assert config.base_url == "https://explicit.example"


@pytest.mark.asyncio
async def test_chain_falls_back_to_settings(monkeypatch):
    monkeypatch.delenv("LAYERED_CONTEXT_DENSE_API_KEY", raising=False)
    monkeypatch.delenv("LAYERED_CONTEXT_DENSE_BASE_URL", raising=False)
    chain = build_default_resolver_chain(settings=_Settings("https://settings.example", "settings-key"))

    config = await chain.resolve()

    assert config.source == "settings"
    assert config.is_complete


@pytest.mark.asyncio
async def test_chain_resolves_nothing():
    chain = DenseConfigResolverChain([StaticConfigResolver(), EnvironmentConfigResolver(environ={})])
    assert await chain.resolve() is None


@pytest.mark.asyncio
async def test_auth_resolver_async_lookup_and_errors():
    async def lookup():
        return " async-key "

    def broken():
        raise RuntimeError("session expired")

    resolved = await AuthSessionConfigResolver(lookup, base_url="https://auth.example").resolve()
    assert resolved.api_key == "async-key"
    assert await AuthSessionConfigResolver(broken).resolve() is None


# --- Embedding parsing ---

def test_parse_openai_style_payload():
    payload = {"data": [
        {"index": 1, "embedding": [0.0, 1.0]},
        {"index": 0, "embedding": [1.0, 0.0]},
    ]}
    assert parse_embedding_items(payload) == [(0, [1.0, 0.0]), (1, [0.0, 1.0])]


def test_parse_variant_payloads():
    assert parse_embedding_items({"embeddings": [[1, 2], [3, 4]]}) == [(0, [1.0, 2.0]), (1, [3.0, 4.0])]
    assert parse_embedding_items({"data": {"results": [{"vector": ["0.5", 1]}]}}) == [(0, [0.5, 1.0])]
    assert parse_embedding_items([[1, 0]]) == [(0, [1.0, 0.0])]


def test_parse_rejects_garbage():
    assert parse_embedding_items({"data": []}) == []
    assert parse_embedding_items({"data": [{"embedding": ["x"]}]}) == []
    assert parse_embedding_items("nope") == []


def test_cosine_similarity():
    assert cosine_similarity([1, 0], [1, 0]) == pytest.approx(1.0)
    assert cosine_similarity([1, 0], [0, 1]) == pytest.approx(0.0)
    assert cosine_similarity([1, 0], [-1, 0]) == pytest.approx(-1.0)
    assert cosine_similarity([0, 0], [1, 0]) == 0.0


# --- HttpDenseScoreProvider ---

def _provider(strict_mode=False):
    chain = DenseConfigResolverChain([StaticConfigResolver("https://embed.example", "key")])
    return HttpDenseScoreProvider(chain, request_timeout_ms=500, strict_mode=strict_mode)


@pytest.mark.asyncio
async def test_provider_maps_cosine_to_unit_range(mocker):
    provider = _provider()
    request = mocker.patch.object(provider, "_request_embeddings", AsyncMock(return_value=[
        (0, [1.0, 0.0]),
        (1, [1.0, 0.0]),
        (2, [0.0, 1.0]),
        (3, [-1.0, 0.0]),
    ]))

    scores = await provider.get_dense_scores("kubernetes", CANDIDATES)

    assert scores == pytest.approx({"node_a": 1.0, "node_b": 0.5, "node_c": 0.0})
    config, inputs = request.await_args.args
    assert config.api_key == "key"
    assert inputs == ["kubernetes", "kubernetes upgrade", "tomato garden", "lisbon trip"]


@pytest.mark.asyncio
async def test_provider_skips_candidates_without_vectors(mocker):
    provider = _provider()
    mocker.patch.object(provider, "_request_embeddings", AsyncMock(return_value=[(0, [1.0, 0.0]), (2, [1.0, 0.0])]))

    scores = await provider.get_dense_scores("kubernetes", CANDIDATES)

    assert scores == pytest.approx({"node_b": 1.0})


@pytest.mark.asyncio
async def test_provider_without_config_returns_nothing(mocker):
    provider = HttpDenseScoreProvider(DenseConfigResolverChain([StaticConfigResolver()]))
    request = mocker.patch.object(provider, "_request_embeddings", AsyncMock())

    assert await provider.get_dense_scores("query", CANDIDATES) == {}
    request.assert_not_awaited()


@pytest.mark.asyncio
async def test_provider_empty_query_returns_nothing(mocker):
    provider = _provider()
    request = mocker.patch.object(provider, "_request_embeddings", AsyncMock())

    assert await provider.get_dense_scores("   ", CANDIDATES) == {}
    request.assert_not_awaited()


@pytest.mark.asyncio
@pytest.mark.parametrize("failure", [aiohttp.ClientError("connection refused"), asyncio.TimeoutError()])
async def test_provider_transport_errors_become_dense_errors(mocker, failure):
    provider = _provider()
    mocker.patch.object(provider, "_request_embeddings", AsyncMock(side_effect=failure))

    with pytest.raises(DenseScoreError):
        await provider.get_dense_scores("kubernetes", CANDIDATES)


@pytest.mark.asyncio
async def test_provider_missing_query_vector(mocker):
    provider = _provider()
    mocker.patch.object(provider, "_request_embeddings", AsyncMock(return_value=[(1, [1.0, 0.0])]))

    with pytest.raises(DenseScoreError):
        await provider.get_dense_scores("kubernetes", CANDIDATES)
