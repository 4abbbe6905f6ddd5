"""
Per-agent tier configuration: system defaults from MemoryConfig plus validated per-agent overrides.
"""

import threading
from dataclasses import fields, replace
from typing import Any, Dict, Optional

from ..models.core import TierConfig
from ..utils.config import MemoryConfig
from ..utils.logging_config import get_logger

logger = get_logger(__name__)

VALID_KEYS = frozenset(f.name for f in fields(TierConfig) if f.name != 'agent_id')

_INT_KEYS = frozenset(['stm_capacity', 'mtm_capacity', 'system_memory_capacity'])
_UNIT_INTERVAL_KEYS = frozenset(['system_memory_importance_threshold'])


class ConfigurationError(Exception):
    """Custom exception for configuration errors."""
    pass


def _validate(key: str, value: Any) -> Any:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigurationError(f'{key} must be numeric, got {value!r}')

    if key in _INT_KEYS:
        if int(value) != value or value < 1:
            raise ConfigurationError(f'{key} must be a positive integer, got {value!r}')
        return int(value)

    value = float(value)
    if key in _UNIT_INTERVAL_KEYS and not 0.0 <= value <= 1.0:
        raise ConfigurationError(f'{key} must be within [0, 1], got {value}')
    if key == 'recency_time_constant' and value <= 0:
        raise ConfigurationError(f'{key} must be positive, got {value}')
    if key.startswith('heat_') and value < 0:
        raise ConfigurationError(f'{key} must be non-negative, got {value}')
    return value


class ConfigurationService:
    """Resolves the TierConfig for an agent."""

    def __init__(self, memory_config: Optional[MemoryConfig] = None):
        if memory_config is None:
            from ..utils.config import config
            memory_config = config.memory

        self._defaults = TierConfig(stm_capacity=memory_config.stm_capacity,
                                    mtm_capacity=memory_config.mtm_capacity,
                                    mtm_fscore_threshold=memory_config.mtm_fscore_threshold,
                                    heat_alpha=memory_config.heat_alpha,
                                    heat_beta=memory_config.heat_beta,
                                    heat_gamma=memory_config.heat_gamma,
                                    heat_threshold=memory_config.heat_threshold,
                                    system_memory_importance_threshold=memory_config.system_memory_importance_threshold,
                                    system_memory_capacity=memory_config.system_memory_capacity,
                                    recency_time_constant=memory_config.recency_time_constant)
        self._overrides: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    def get_default(self) -> TierConfig:
        return self._defaults

    def get_config(self, agent_id: str) -> TierConfig:
        """Defaults merged with the agent's overrides; the result is immutable."""
        with self._lock:
            overrides = dict(self._overrides.get(agent_id, {}))
        return replace(self._defaults, agent_id=agent_id, **overrides)

    def set_agent_config(self, agent_id: str, settings: Dict[str, Any]) -> TierConfig:
        """
        Store overrides for an agent.

        Args:
            agent_id: Agent the overrides apply to
            settings: Mapping of TierConfig field names to values; unknown keys are ignored

        Returns:
            The resolved TierConfig after applying the overrides

        Raises:
            ConfigurationError: If a known key has an invalid value
        """
        if not agent_id or not str(agent_id).strip():
            raise ConfigurationError('agent_id is required')

        accepted = {}
        for key, value in (settings or {}).items():
            if key not in VALID_KEYS:
                logger.warning(f'Ignoring unknown configuration key {key!r} for agent {agent_id}')
                continue
            accepted[key] = _validate(key, value)

        with self._lock:
            self._overrides.setdefault(agent_id, {}).update(accepted)

        if accepted:
            logger.info(f'Updated configuration for agent {agent_id}: {sorted(accepted)}')
        return self.get_config(agent_id)

    def clear_agent_config(self, agent_id: str) -> None:
        with self._lock:
            self._overrides.pop(agent_id, None)
