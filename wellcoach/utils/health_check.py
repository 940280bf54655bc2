"""
Health and system information for the coaching service.
"""

import importlib.util
from typing import Any, Dict, Optional

from .bedrock_llm import BedrockLLM
from .config import config
from .logging_config import get_logger

logger = get_logger(__name__)

SERVICE_NAME = 'WellCoach'
SERVICE_VERSION = '1.0.0'
AUDIO_SDK_MODULE = 'aws_sdk_bedrock_runtime'


def _text_model_status(llm: Optional[BedrockLLM]) -> Dict[str, Any]:
    status = {'service': 'Amazon Bedrock LLM', 'model': config.bedrock_llm.model_id}
    try:
        llm = llm or BedrockLLM(config.bedrock_llm)
        status['healthy'] = llm.health_check()
    except Exception as e:
        status.update(healthy=False, error=str(e))
    return status


def _audio_model_status() -> Dict[str, Any]:
    # presence of the SDK only; opening a bidirectional session is billed
    installed = importlib.util.find_spec(AUDIO_SDK_MODULE) is not None
    status = {'healthy': installed, 'service': 'Amazon Bedrock bidirectional audio',
              'model': config.bedrock_sonic.model_id}
    if not installed:
        status['error'] = 'aws-sdk-bedrock-runtime not installed'
    return status


def get_health_status(llm: Optional[BedrockLLM] = None) -> Dict[str, Any]:
    """Get detailed health status of the model backends.

    Args:
        llm: Text model client to check, a new one from configuration if None

    Returns:
        Dictionary with health status of each component
    """
    return {'bedrock_llm': _text_model_status(llm), 'bedrock_sonic': _audio_model_status()}


def check_health(llm: Optional[BedrockLLM] = None) -> bool:
    """Return True only if every backend reports healthy."""
    health_status = get_health_status(llm)
    unhealthy = [name for name, status in health_status.items() if not status.get('healthy', False)]
    if unhealthy:
        logger.warning(f"Unhealthy components: {', '.join(unhealthy)}")
        return False
    logger.info('All system components are healthy')
    return True


def get_system_info(llm: Optional[BedrockLLM] = None, memory: Optional[Any] = None) -> Dict[str, Any]:
    """Get system information, configuration and health.

    Args:
        llm: Text model client to check
        memory: Session memory store; adds the active session count when given

    Returns:
        Dictionary with system information
    """
    info = {
        'service_name': SERVICE_NAME,
        'version': SERVICE_VERSION,
        'environment': config.environment,
        'configuration': {
            'bedrock_llm_model': config.bedrock_llm.model_id,
            'bedrock_sonic_model': config.bedrock_sonic.model_id,
            'history_cap': config.memory.history_cap,
            'session_ttl_seconds': config.memory.session_ttl_seconds,
            'use_mock_wearables': config.use_mock_wearables,
            'aws_region': config.bedrock_llm.region
        },
        'health_status': get_health_status(llm)
    }
    if memory is not None:
        info['active_sessions'] = len(memory)
    return info
