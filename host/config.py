import logging
import os
from typing import List, Optional, Any
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field

from layered_context.config import (
    LayeredContextConfig,
    RetrievalEscalationThresholds,
    normalize_layered_config,
)

logger = logging.getLogger(__name__)

# Environment variable prefix
ENV_PREFIX = "LAYERED_CONTEXT_"

DEFAULT_EMBEDDING_ENDPOINTS = ["/v1/embeddings", "/embeddings"]


class LayeredContextSettings(BaseSettings):
    """Main configuration settings loaded from environment variables and .env."""

    # Logging Settings
    log_level: str = Field(default="INFO", description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)")
    log_format: str = Field(default='%(asctime)s - %(name)s - %(levelname)s - %(message)s', description="Logging format string")
    log_to_file: bool = Field(default=False, description="Enable logging to file with rotation")
    log_file_path: str = Field(default="logs/layered_context.log", description="Path to the log file (directory will be created)")
    log_max_lines_per_file: int = Field(default=5000, description="Maximum lines per log file before rotation")
    log_max_files: int = Field(default=10, description="Maximum number of log files to keep")

    # Tracing Settings
    tracing_enabled: bool = Field(default=False, description="Export OpenTelemetry traces and logs over OTLP/HTTP")
    tracing_service_name: str = Field(default="layered-context", description="service.name resource attribute")
    tracing_endpoint: Optional[str] = Field(default=None, description="OTLP/HTTP collector base URL")

    # Layered context surface (LAYERED_CONTEXT_L0_TARGET_TOKENS etc.)
    l0_target_tokens: int = Field(default=120, description="Target size of the root abstract and node abstracts")
    l1_target_tokens: int = Field(default=1200, description="Target size of a node overview")
    max_prompt_tokens: int = Field(default=32000, description="Hard ceiling for the rewritten prompt")
    max_archives: int = Field(default=12, description="Node count above which a retention warning is logged")
    max_recent_messages: int = Field(default=24, description="Raw turns always kept verbatim")
    archive_chunk_size: int = Field(default=8, description="Messages per archived node")
    enable_session_compression: bool = Field(default=True, description="Master switch for layering")
    score_threshold_high: float = Field(default=0.64, description="Base top-1 confidence threshold")
    top1_top2_margin: float = Field(default=0.08, description="Base top-1/top-2 margin threshold")
    max_items_for_l1: int = Field(default=4, description="Overviews reranked at L1")
    max_items_for_l2: int = Field(default=2, description="Transcripts loaded at L2")

    # Storage Settings
    storage_type: str = Field(default="file", description="Storage backend ('file' or 'sqlite')")
    storage_base_dir: str = Field(default="./layered_context_data", description="Base directory for file storage")
    storage_db_path: str = Field(default="./layered_context_data/layered_context.db", description="Database path for SQLite storage")
    storage_pretty_json: bool = Field(default=True, description="Pretty-print JSON written by file storage")
    storage_timeout: float = Field(default=30.0, description="SQLite connection timeout in seconds")
    storage_wal_mode: bool = Field(default=True, description="Enable WAL mode for SQLite")

    # Dense Score Provider Settings
    dense_base_url: Optional[str] = Field(default=None, description="Embedding service base URL")
    dense_api_key: Optional[str] = Field(default=None, description="Embedding service API key")
    dense_endpoints: List[str] = Field(default_factory=lambda: list(DEFAULT_EMBEDDING_ENDPOINTS), description="Embedding endpoint paths tried in order (JSON list in env)")
    dense_request_timeout_ms: int = Field(default=1200, description="Timeout for one dense scoring call")
    dense_strict_mode: bool = Field(default=False, description="Propagate dense scoring failures instead of falling back to sparse-only")

    # LLM Settings (summarization)
    llm_type: str = Field(default="litellm", description="Type of LLM provider (e.g., 'litellm')")
    llm_default_model: Optional[str] = Field(default=None, description="Model used for chunk summaries; extractive summaries when unset")
    llm_api_key: Optional[str] = Field(default=None, description="API Key for the LLM service")
    llm_max_retries: int = Field(default=3, description="Retries for retryable summarization errors")
    llm_request_timeout_s: Optional[float] = Field(default=60.0, description="Seconds before one summarization call is abandoned")

    # Temporary topic tracking
    topic_judge: str = Field(default="scorer", description="'scorer' rates topic relevance, 'classifier' asks for the transition label")
    topic_model: Optional[str] = Field(default=None, description="Model for topic judgements; llm_default_model when unset")

    # Pydantic Settings Configuration
    model_config = SettingsConfigDict(
        env_file='.env',            # Load from .env file
        env_file_encoding='utf-8',
        env_prefix=ENV_PREFIX,
        extra='ignore',             # Ignore extra fields found in env
        case_sensitive=False
    )

    def to_layered_config(self) -> LayeredContextConfig:
        """Build the normalized engine configuration from these settings."""
        return normalize_layered_config(LayeredContextConfig(
            l0_target_tokens=self.l0_target_tokens,
            l1_target_tokens=self.l1_target_tokens,
            max_prompt_tokens=self.max_prompt_tokens,
            max_archives=self.max_archives,
            max_recent_messages=self.max_recent_messages,
            archive_chunk_size=self.archive_chunk_size,
            enable_session_compression=self.enable_session_compression,
            retrieval_escalation_thresholds=RetrievalEscalationThresholds(
                score_threshold_high=self.score_threshold_high,
                top1_top2_margin=self.top1_top2_margin,
                max_items_for_l1=self.max_items_for_l1,
                max_items_for_l2=self.max_items_for_l2,
            ),
        ))


# Helper function to load settings
def load_settings(env_file: str = '.env', **overrides: Any) -> LayeredContextSettings:
    """
    Load settings from ``env_file`` and the environment.

    Keyword overrides win over both sources.

    Raises:
        ValueError: If the configuration cannot be parsed
    """
    logger.info(f"Loading layered context configuration from {env_file} and environment variables (prefix: '{ENV_PREFIX}')...")

    try:
        from dotenv import load_dotenv
        env_loaded = load_dotenv(env_file, override=False)
        logger.debug(f".env loading result: {env_loaded}")
    except Exception as e:
        logger.warning(f"Failed to load .env file {env_file}: {e}")

    prefixed_vars = [k for k in os.environ if k.upper().startswith(ENV_PREFIX)]
    logger.debug(f"Found {len(prefixed_vars)} {ENV_PREFIX} environment variables: {prefixed_vars}")

    try:
        settings = LayeredContextSettings(_env_file=env_file, **overrides)
        logger.info(
            f"Layered context configuration loaded (storage={settings.storage_type}, "
            f"dense={'configured' if settings.dense_base_url else 'off'}, "
            f"summaries={'llm' if settings.llm_default_model else 'extractive'})"
        )
        return settings
    except Exception as e:
        logger.exception(f"Critical error loading layered context configuration: {e}")
        raise ValueError(f"Failed to load configuration: {e}") from e
