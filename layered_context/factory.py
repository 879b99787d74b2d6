"""Default wiring for the layered context engine."""

import logging
from typing import Optional

from llm.provider_factory import LLMProviderFactory
from llm.provider_interface import LLMProvider
from storage.storage_factory import StorageFactory
from storage.storage_interface import LayeredContextStorage
from .dense_scores import AuthLookup, DenseScoreProvider, HttpDenseScoreProvider, build_default_resolver_chain
from .indexer import LayeredContextIndexer, RetentionPolicy
from .manager import LayeredContextManager
from .retriever import LayeredContextRetriever
from .summarizer import ExtractiveSummarizer, LLMSummarizer, Summarizer
from .temporary_topic import LLMTopicClassifier, LLMTopicScorer, TopicScorer

logger = logging.getLogger(__name__)


def build_session_key(platform: str, chat_id: Optional[str] = None) -> str:
    return f"{platform}:{chat_id or 'default'}"


def create_summarizer(settings=None, llm_provider: Optional[LLMProvider] = None) -> Summarizer:
    """LLM summaries when a provider or model is configured, extractive otherwise."""
    max_retries = settings.llm_max_retries if settings is not None else 3
    model = settings.llm_default_model if settings is not None else None
    if llm_provider is not None:
        return LLMSummarizer(llm_provider, model=model, max_retry_attempts=max_retries)
    if settings is not None and settings.llm_default_model:
        provider = LLMProviderFactory.create_provider(settings.llm_type, {
            "default_model": settings.llm_default_model,
            "api_key": settings.llm_api_key,
            "request_timeout": settings.llm_request_timeout_s,
        })
        return LLMSummarizer(provider, model=model, max_retry_attempts=max_retries)
    logger.info("No LLM configured for layered context; using extractive summaries")
    return ExtractiveSummarizer()


def create_topic_scorer(settings=None, llm_provider: Optional[LLMProvider] = None) -> Optional[TopicScorer]:
    """LLM topic judge for temporary topic tracking, or None when no model is configured."""
    model = None
    if settings is not None:
        model = settings.topic_model or settings.llm_default_model
    if llm_provider is None:
        if not model:
            return None
        llm_provider = LLMProviderFactory.create_provider(settings.llm_type, {
            "default_model": model,
            "api_key": settings.llm_api_key,
            "request_timeout": settings.llm_request_timeout_s,
        })
    judge = settings.topic_judge.lower() if settings is not None else "scorer"
    if judge == "classifier":
        return LLMTopicClassifier(llm_provider, model=model)
    if judge != "scorer":
        raise ValueError(f"Unsupported topic judge: {judge}")
    return LLMTopicScorer(llm_provider, model=model)


async def create_layered_context_manager(settings=None,
                                         llm_provider: Optional[LLMProvider] = None,
                                         storage: Optional[LayeredContextStorage] = None,
                                         dense_score_provider: Optional[DenseScoreProvider] = None,
                                         auth_lookup: Optional[AuthLookup] = None,
                                         retention_policy: Optional[RetentionPolicy] = None) -> LayeredContextManager:
    """
    Build a manager from ``LayeredContextSettings`` plus optional collaborators.

    Args:
        settings: Loaded settings; ``load_settings()`` is used when None
        llm_provider: Provider for LLM summaries
        storage: Storage backend; built from settings and initialized when None
        dense_score_provider: Dense scorer; an HTTP provider over the default
            resolver chain when None
        auth_lookup: Callable returning the host session's embedding API key
        retention_policy: Optional node pruning hook for the indexer

    Raises:
        RuntimeError: If the storage backend fails to initialize
    """
    if settings is None:
        from host.config import load_settings
        settings = load_settings()

    if storage is None:
        storage = StorageFactory.create_from_settings(settings)
        if not await storage.initialize():
            raise RuntimeError(f"Failed to initialize {settings.storage_type} storage for layered context")

    if dense_score_provider is None:
        dense_score_provider = HttpDenseScoreProvider(
            build_default_resolver_chain(settings=settings, auth_lookup=auth_lookup),
            request_timeout_ms=settings.dense_request_timeout_ms,
            strict_mode=settings.dense_strict_mode,
            endpoints=settings.dense_endpoints,
        )

    summarizer = create_summarizer(settings, llm_provider)
    indexer = LayeredContextIndexer(storage, summarizer, retention_policy=retention_policy)
    retriever = LayeredContextRetriever(storage, dense_score_provider)
    return LayeredContextManager(storage, indexer, retriever, default_config=settings.to_layered_config())
