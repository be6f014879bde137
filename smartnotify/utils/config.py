"""
Configuration management for AWS services and notification engine settings.
"""

import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()


@dataclass
class BedrockLLMConfig:
    """Configuration for the Amazon Bedrock inference backend."""
    region: str
    model_id: str
    max_tokens: int
    temperature: float
    retry_attempts: int
    retry_delay: float
    timeout_seconds: float


@dataclass
class BedrockEmbedConfig:
    """Configuration for Amazon Bedrock Embed service."""
    region: str
    model_id: str
    dimension: int
    retry_attempts: int
    retry_delay: float


@dataclass
class BedrockRerankConfig:
    """Configuration for Amazon Bedrock Rerank service."""
    enabled: bool
    region: str
    model_id: str
    retry_attempts: int
    retry_delay: float


@dataclass
class OpenSearchConfig:
    """Configuration for OpenSearch."""
    endpoint: str
    port: int
    region: str
    index_name: str
    dimension: int


@dataclass
class NotificationConfig:
    """Tuning knobs for activity monitoring, retrieval, caching and learning."""
    pause_threshold_seconds: int
    message_count_threshold: int
    threshold_window_seconds: int
    debounce_seconds: int
    unread_limit: int
    unread_window_minutes: int
    recent_activity_limit: int
    recent_activity_days: int
    semantic_top_k: int
    embedding_reuse_days: int
    retrieval_timeout_seconds: float
    cache_ttl_hours: int
    cache_staleness_messages: int
    notification_text_max_length: int
    learner_interval_days: int
    learner_min_term_occurrences: int
    monitor_tick_seconds: float
    analysis_workers: int


@dataclass
class MCPConfig:
    """Configuration for MCP interface."""
    transport: str
    host: str
    port: int


@dataclass
class AppConfig:
    """Main application configuration."""
    environment: str
    log_level: str
    bedrock_llm: BedrockLLMConfig
    bedrock_embed: BedrockEmbedConfig
    bedrock_rerank: BedrockRerankConfig
    opensearch: OpenSearchConfig
    notification: NotificationConfig
    mcp: MCPConfig


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ('1', 'true', 'yes', 'on')


def load_config() -> AppConfig:
    """Load configuration from environment variables with defaults."""
    environment = os.getenv('ENVIRONMENT', 'development')

    # Bedrock inference configuration; low temperature keeps decisions repeatable
    bedrock_llm_config = BedrockLLMConfig(region=os.getenv('BEDROCK_LLM_AWS_REGION', 'us-east-1'),
                                          model_id=os.getenv('BEDROCK_LLM_MODEL_ID', 'anthropic.claude-3-haiku-20240307-v1:0'),
                                          max_tokens=int(os.getenv('BEDROCK_LLM_MAX_TOKENS', '512')),
                                          temperature=float(os.getenv('BEDROCK_LLM_TEMPERATURE', '0.2')),
                                          retry_attempts=int(os.getenv('BEDROCK_LLM_RETRY_ATTEMPTS', '1')),
                                          retry_delay=float(os.getenv('BEDROCK_LLM_RETRY_DELAY', '0.5')),
                                          timeout_seconds=float(os.getenv('BEDROCK_LLM_TIMEOUT_SECONDS', '10')))

    # Bedrock Embed configuration
    bedrock_embed_config = BedrockEmbedConfig(region=os.getenv('BEDROCK_EMBED_AWS_REGION', 'us-east-1'),
                                              model_id=os.getenv('BEDROCK_EMBED_MODEL_ID', 'amazon.titan-embed-text-v2:0'),
                                              dimension=int(os.getenv('BEDROCK_EMBED_DIMENSION', '1024')),
                                              retry_attempts=int(os.getenv('BEDROCK_EMBED_RETRY_ATTEMPTS', '2')),
                                              retry_delay=float(os.getenv('BEDROCK_EMBED_RETRY_DELAY', '0.5')))

    # Bedrock Rerank configuration
    bedrock_rerank_config = BedrockRerankConfig(enabled=_env_bool('BEDROCK_RERANK_ENABLED', 'false'),
                                                region=os.getenv('BEDROCK_RERANK_AWS_REGION', 'us-west-2'),
                                                model_id=os.getenv('BEDROCK_RERANK_MODEL_ID', 'amazon.rerank-v1:0'),
                                                retry_attempts=int(os.getenv('BEDROCK_RERANK_RETRY_ATTEMPTS', '2')),
                                                retry_delay=float(os.getenv('BEDROCK_RERANK_RETRY_DELAY', '0.5')))

    # Vector search and document persistence configuration
    opensearch_config = OpenSearchConfig(endpoint=os.getenv('OPENSEARCH_ENDPOINT', 'localhost'),
                                         port=int(os.getenv('OPENSEARCH_PORT', '443')),
                                         region=os.getenv('OPENSEARCH_AWS_REGION', 'us-east-1'),
                                         index_name=os.getenv('OPENSEARCH_INDEX', 'smart_notify'),
                                         dimension=int(os.getenv('OPENSEARCH_DIMENSION', '1024')))

    notification_config = NotificationConfig(
        pause_threshold_seconds=int(os.getenv('NOTIFY_PAUSE_THRESHOLD_SECONDS', '120')),
        message_count_threshold=int(os.getenv('NOTIFY_MESSAGE_COUNT_THRESHOLD', '20')),
        threshold_window_seconds=int(os.getenv('NOTIFY_THRESHOLD_WINDOW_SECONDS', '600')),
        debounce_seconds=int(os.getenv('NOTIFY_DEBOUNCE_SECONDS', '300')),
        unread_limit=int(os.getenv('NOTIFY_UNREAD_LIMIT', '30')),
        unread_window_minutes=int(os.getenv('NOTIFY_UNREAD_WINDOW_MINUTES', '15')),
        recent_activity_limit=int(os.getenv('NOTIFY_RECENT_ACTIVITY_LIMIT', '100')),
        recent_activity_days=int(os.getenv('NOTIFY_RECENT_ACTIVITY_DAYS', '7')),
        semantic_top_k=int(os.getenv('NOTIFY_SEMANTIC_TOP_K', '10')),
        embedding_reuse_days=int(os.getenv('NOTIFY_EMBEDDING_REUSE_DAYS', '7')),
        retrieval_timeout_seconds=float(os.getenv('NOTIFY_RETRIEVAL_TIMEOUT_SECONDS', '5')),
        cache_ttl_hours=int(os.getenv('NOTIFY_CACHE_TTL_HOURS', '24')),
        cache_staleness_messages=int(os.getenv('NOTIFY_CACHE_STALENESS_MESSAGES', '10')),
        notification_text_max_length=int(os.getenv('NOTIFY_TEXT_MAX_LENGTH', '100')),
        learner_interval_days=int(os.getenv('NOTIFY_LEARNER_INTERVAL_DAYS', '7')),
        learner_min_term_occurrences=int(os.getenv('NOTIFY_LEARNER_MIN_TERM_OCCURRENCES', '2')),
        monitor_tick_seconds=float(os.getenv('NOTIFY_MONITOR_TICK_SECONDS', '1.0')),
        analysis_workers=int(os.getenv('NOTIFY_ANALYSIS_WORKERS', '4')))

    # MCP configuration
    mcp_config = MCPConfig(transport=os.getenv('MCP_TRANSPORT', 'sse'),
                           host=os.getenv('MCP_HOST', '127.0.0.1'),
                           port=int(os.getenv('MCP_PORT', '8000')))

    return AppConfig(environment=environment,
                     log_level=os.getenv('LOG_LEVEL', 'INFO'),
                     bedrock_llm=bedrock_llm_config,
                     bedrock_embed=bedrock_embed_config,
                     bedrock_rerank=bedrock_rerank_config,
                     opensearch=opensearch_config,
                     notification=notification_config,
                     mcp=mcp_config)


# Global configuration instance
config = load_config()
