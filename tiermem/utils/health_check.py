"""
Health check utilities for the application.
"""

from typing import Any, Dict, Optional

from .config import AppConfig
from .logging_config import get_logger

logger = get_logger(__name__)


def check_health(service=None) -> bool:
    """Check the health of all system components.

    Args:
        service: MemoryManagementService whose collaborators are checked (built from config if None)

    Returns:
        True if all components are healthy, False otherwise
    """
    try:
        health_status = get_health_status(service)

        # Check if all components are healthy
        all_healthy = all(status.get('healthy', False) for status in health_status.values())

        if all_healthy:
            logger.info('All system components are healthy')
        else:
            logger.warning('Some system components are unhealthy')

        return all_healthy

    except Exception as e:
        logger.error(f'Health check failed: {e}')
        return False


def get_health_status(service=None, app_config: Optional[AppConfig] = None) -> Dict[str, Any]:
    """Get detailed health status of all components.

    Returns:
        Dictionary with health status of each component
    """
    if app_config is None:
        from .config import config as default_config
        app_config = service.config if service is not None else default_config

    health_status = {}

    # Check Bedrock Embed
    try:
        if service is not None:
            embed = service.embed
        else:
            from .bedrock_embed import BedrockEmbed
            embed = BedrockEmbed(app_config.bedrock_embed)
        health_status['bedrock_embed'] = {
            'healthy': embed.health_check(),
            'service': 'Amazon Bedrock Embed',
            'model': 'mock' if app_config.bedrock_embed.use_mock else app_config.bedrock_embed.model_id
        }
    except Exception as e:
        health_status['bedrock_embed'] = {'healthy': False, 'service': 'Amazon Bedrock Embed', 'error': str(e)}

    # Check Bedrock LLM; template responses are used when it is disabled
    llm = service.llm if service is not None else None
    if llm is None and not app_config.bedrock_llm.enabled:
        health_status['bedrock_llm'] = {'healthy': True, 'service': 'Amazon Bedrock LLM', 'enabled': False}
    else:
        try:
            if llm is None:
                from .bedrock_llm import BedrockLLM
                llm = BedrockLLM(app_config.bedrock_llm)
            health_status['bedrock_llm'] = {
                'healthy': llm.health_check(),
                'service': 'Amazon Bedrock LLM',
                'model': app_config.bedrock_llm.model_id
            }
        except Exception as e:
            health_status['bedrock_llm'] = {'healthy': False, 'service': 'Amazon Bedrock LLM', 'error': str(e)}

    # Check memory store
    backend = app_config.memory.store_backend
    try:
        if service is not None:
            store = service.store
        else:
            from ..services.storage import create_store
            store = create_store(app_config)
        health_status['memory_store'] = {'healthy': store.health_check(), 'service': 'Memory store', 'backend': backend}
    except Exception as e:
        health_status['memory_store'] = {'healthy': False, 'service': 'Memory store', 'backend': backend, 'error': str(e)}

    return health_status


def get_system_info(service=None) -> Dict[str, Any]:
    """Get system information and configuration.

    Returns:
        Dictionary with system information
    """
    from .config import config as default_config
    app_config = service.config if service is not None else default_config

    return {
        'service_name': 'TierMem',
        'version': '1.0.0',
        'configuration': {
            'store_backend': app_config.memory.store_backend,
            'bedrock_embed_model': app_config.bedrock_embed.model_id,
            'embedding_mock_mode': app_config.bedrock_embed.use_mock,
            'bedrock_llm_enabled': app_config.bedrock_llm.enabled,
            'aws_region': app_config.bedrock_llm.region
        },
        'jobs': {
            'max_attempts': app_config.jobs.max_attempts,
            'tracked_jobs': service.scheduler.job_count() if service is not None else 0
        },
        'health_status': get_health_status(service, app_config)
    }
