"""
Health checks for the remote services the notification engine depends on.
"""

from typing import Any, Callable, Dict, Optional

from .bedrock_embed import BedrockEmbed
from .bedrock_llm import BedrockLLM
from .bedrock_rerank import BedrockRerank
from .config import AppConfig
from .logging_config import get_logger
from .opensearch_client import OpenSearchClient

logger = get_logger(__name__)


def _check_service(service: str, build: Callable[[], Any], **details: Any) -> Dict[str, Any]:
    try:
        healthy = build().health_check()
        return {'healthy': healthy, 'service': service, **details}
    except Exception as e:
        logger.warning(f'{service} health check failed: {e}')
        return {'healthy': False, 'service': service, 'error': str(e)}


def get_health_status(app_config: Optional[AppConfig] = None) -> Dict[str, Any]:
    """Get detailed health status of all components.

    Args:
        app_config: Configuration (global config if None)

    Returns:
        Dictionary with health status of each component
    """
    if app_config is None:
        from .config import config as app_config

    health_status = {
        'bedrock_llm': _check_service('Amazon Bedrock LLM',
                              lambda: BedrockLLM(app_config.bedrock_llm),
                              model=app_config.bedrock_llm.model_id),
        'bedrock_embed': _check_service('Amazon Bedrock Embed',
                                lambda: BedrockEmbed(app_config.bedrock_embed),
                                model=app_config.bedrock_embed.model_id),
        'opensearch': _check_service('Amazon OpenSearch',
                             lambda: OpenSearchClient(app_config.opensearch),
                             endpoint=app_config.opensearch.endpoint),
    }

    # Reranking is optional; retrieval works without it
    if app_config.bedrock_rerank.enabled:
        health_status['bedrock_rerank'] = _check_service('Amazon Bedrock Rerank',
                                                 lambda: BedrockRerank(app_config.bedrock_rerank),
                                                 model=app_config.bedrock_rerank.model_id)

    return health_status


def check_health(app_config: Optional[AppConfig] = None) -> bool:
    """Check the health of all system components.

    Returns:
        True if all components are healthy, False otherwise
    """
    health_status = get_health_status(app_config)
    all_healthy = all(status.get('healthy', False) for status in health_status.values())

    if all_healthy:
        logger.info('All system components are healthy')
    else:
        unhealthy = [name for name, status in health_status.items() if not status.get('healthy', False)]
        logger.warning(f'Unhealthy components: {unhealthy}')

    return all_healthy


def get_system_info(app_config: Optional[AppConfig] = None) -> Dict[str, Any]:
    """Get system information and configuration.

    Returns:
        Dictionary with system information
    """
    if app_config is None:
        from .config import config as app_config

    settings = app_config.notification
    return {
        'service_name': 'SmartNotify',
        'version': '0.1.0',
        'configuration': {
            'bedrock_llm_model': app_config.bedrock_llm.model_id,
            'bedrock_embed_model': app_config.bedrock_embed.model_id,
            'rerank_enabled': app_config.bedrock_rerank.enabled,
            'pause_threshold_seconds': settings.pause_threshold_seconds,
            'message_count_threshold': settings.message_count_threshold,
            'cache_ttl_hours': settings.cache_ttl_hours,
            'aws_region': app_config.bedrock_llm.region
        },
        'health_status': get_health_status(app_config)
    }
