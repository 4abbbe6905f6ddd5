"""
MCP Interface Layer using fastmcp for agent orchestration.
"""
from typing import Any, Dict, List, Optional

from fastmcp import FastMCP

from tiermem.models.core import RetrievalLimits
from tiermem.services.memory_management import MemoryManagementError, MemoryManagementService
from tiermem.utils.config import config
from tiermem.utils.health_check import check_health, get_system_info
from tiermem.utils.logging_config import get_logger

logger = get_logger(__name__)

# Initialize FastMCP application
mcp = FastMCP('Hierarchical Memory')
memory_service = MemoryManagementService()


def _limits(stm_limit: Optional[int], mtm_limit: Optional[int], lpm_limit: Optional[int],
            system_limit: Optional[int]) -> RetrievalLimits:
    defaults = memory_service.default_limits
    return RetrievalLimits(stm=stm_limit or defaults.stm,
                           mtm=mtm_limit or defaults.mtm,
                           lpm=lpm_limit or defaults.lpm,
                           system=system_limit or defaults.system)


@mcp.tool()
def process_interaction(agent_id: str, query: str) -> Dict[str, Any]:
    """Answer a message with memory from every tier and store the turn in short-term memory.

    Args:
        agent_id: Agent ID
        query: User message

    Returns:
        Dictionary with response, memory_context and metadata

    Raises:
        Exception: If processing fails
    """
    try:
        return memory_service.process_interaction(agent_id, query)

    except MemoryManagementError as e:
        logger.error(f'Memory management error in MCP interaction: {e}')
        raise Exception(f'Interaction failed: {e}')
    except Exception as e:
        logger.error(f'Unexpected error in MCP interaction: {e}')
        raise Exception(f'Interaction failed: {e}')


@mcp.tool()
def search_memories(agent_id: str,
                    query: str,
                    stm_limit: Optional[int] = None,
                    mtm_limit: Optional[int] = None,
                    lpm_limit: Optional[int] = None,
                    system_limit: Optional[int] = None) -> Dict[str, Any]:
    """Search an agent's memories across all tiers.

    Args:
        agent_id: Agent ID
        query: Natural language query
        stm_limit: Maximum recent items (default: 5)
        mtm_limit: Maximum segments (default: 10)
        lpm_limit: Maximum knowledge entries and traits (default: 8 each)
        system_limit: Maximum shared entries (default: 3)

    Returns:
        Dictionary with per-tier results and metadata

    Raises:
        Exception: If search fails
    """
    try:
        results = memory_service.search_memories(agent_id, query,
                                                 _limits(stm_limit, mtm_limit, lpm_limit, system_limit))
        logger.debug(f'MCP search returned {results["metadata"]["total_results"]} memories for agent {agent_id}')
        return results

    except MemoryManagementError as e:
        logger.error(f'Memory management error in MCP search: {e}')
        raise Exception(f'Memory search failed: {e}')
    except Exception as e:
        logger.error(f'Unexpected error in MCP search: {e}')
        raise Exception(f'Memory search failed: {e}')


@mcp.tool()
def get_memory_summary(agent_id: str) -> Dict[str, Any]:
    """Summarize an agent's memory: per-tier counts, heat, capacity status and distribution."""
    try:
        return memory_service.get_memory_summary(agent_id)

    except MemoryManagementError as e:
        logger.error(f'Memory management error in MCP summary: {e}')
        raise Exception(f'Memory summary failed: {e}')


@mcp.tool()
def trigger_memory_maintenance(agent_id: str, operations: Optional[List[str]] = None) -> Dict[str, Any]:
    """Schedule background maintenance for an agent.

    Args:
        agent_id: Agent ID
        operations: Any of 'heat_update', 'capacity_check', 'lpm_evaluation' (default: all)
    """
    try:
        return memory_service.trigger_memory_maintenance(agent_id, operations)

    except MemoryManagementError as e:
        logger.error(f'Memory management error in MCP maintenance: {e}')
        raise Exception(f'Memory maintenance failed: {e}')


@mcp.tool()
def initialize_agent(agent_id: str, settings: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Set per-agent tier configuration overrides and schedule the agent's maintenance jobs."""
    try:
        return memory_service.initialize_agent(agent_id, settings)

    except MemoryManagementError as e:
        logger.error(f'Memory management error in MCP agent initialization: {e}')
        raise Exception(f'Agent initialization failed: {e}')


@mcp.tool()
def add_knowledge(agent_id: str,
                  fact: str,
                  confidence: float = 1.0,
                  persona_type: str = 'user',
                  identifier: str = 'default') -> Dict[str, Any]:
    """Store a fact about a persona in the agent's long-term memory."""
    try:
        return memory_service.add_knowledge(agent_id, fact, confidence, persona_type, identifier)

    except MemoryManagementError as e:
        logger.error(f'Memory management error in MCP add knowledge: {e}')
        raise Exception(f'Add knowledge failed: {e}')


@mcp.tool()
def add_trait(agent_id: str, name: str, value: str, confidence: float = 0.5, owner: str = 'object') -> Dict[str, Any]:
    """Store a trait for the default user persona (owner='object') or the agent itself (owner='agent')."""
    try:
        return memory_service.add_trait(agent_id, name, value, confidence, owner)

    except MemoryManagementError as e:
        logger.error(f'Memory management error in MCP add trait: {e}')
        raise Exception(f'Add trait failed: {e}')


@mcp.tool()
def delete_knowledge(agent_id: str, knowledge_id: str) -> bool:
    """Delete a long-term knowledge entry or trait."""
    try:
        return memory_service.delete_knowledge(agent_id, knowledge_id)

    except MemoryManagementError as e:
        logger.error(f'Memory management error in MCP delete knowledge: {e}')
        raise Exception(f'Delete knowledge failed: {e}')


@mcp.tool()
def run_system_maintenance() -> Dict[str, Any]:
    """Schedule eviction of the least important shared entries down to system memory capacity."""
    try:
        return {'job_id': memory_service.schedule_system_maintenance()}

    except Exception as e:
        logger.error(f'Failed to schedule system maintenance: {e}')
        raise Exception(f'System maintenance failed: {e}')


@mcp.tool()
def health_status() -> Dict[str, Any]:
    """Service configuration, job registry size and health of the embedding service, LLM and memory store."""
    return get_system_info(memory_service)


if __name__ == '__main__':
    if not check_health(memory_service):
        logger.warning('Starting with unhealthy components')
    memory_service.start_periodic_jobs()
    transport = config.mcp.transport
    host = config.mcp.host
    port = config.mcp.port
    mcp.run(transport=transport, host=host, port=port)
