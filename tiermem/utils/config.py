"""
Configuration management for AWS services and memory tier settings.
"""

import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ('1', 'true', 'yes', 'on')


@dataclass
class BedrockLLMConfig:
    """Configuration for Amazon Bedrock LLM service."""
    region: str
    model_id: str
    max_tokens: int
    temperature: float
    retry_attempts: int
    retry_delay: float
    enabled: bool


@dataclass
class BedrockEmbedConfig:
    """Configuration for Amazon Bedrock Embed service."""
    region: str
    model_id: str
    dimension: int
    retry_attempts: int
    retry_delay: float
    use_mock: bool
    mock_dimension: int


@dataclass
class OpenSearchConfig:
    """Configuration for OpenSearch."""
    endpoint: str
    port: int
    region: str
    index_prefix: str
    use_ssl: bool
    aws_auth: bool
    aws_service: str


@dataclass
class MemoryConfig:
    """System-wide defaults for the memory tiers and retrieval."""
    store_backend: str
    stm_capacity: int
    mtm_capacity: int
    mtm_fscore_threshold: float
    heat_alpha: float
    heat_beta: float
    heat_gamma: float
    heat_threshold: float
    system_memory_importance_threshold: float
    system_memory_capacity: int
    recency_time_constant: float
    stm_retrieval_limit: int
    mtm_retrieval_limit: int
    lpm_retrieval_limit: int
    system_retrieval_limit: int
    retrieval_timeout: float


@dataclass
class JobConfig:
    """Configuration for the background job scheduler."""
    memory_queue_workers: int
    default_queue_workers: int
    max_attempts: int
    retry_delay: float
    heat_update_interval: float
    lpm_evaluation_interval: float
    system_maintenance_interval: float
    job_history: int


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
    opensearch: OpenSearchConfig
    memory: MemoryConfig
    jobs: JobConfig
    mcp: MCPConfig


def load_config() -> AppConfig:
    """Load configuration from environment variables with defaults."""
    environment = os.getenv('ENVIRONMENT', 'development')

    # Bedrock configuration
    bedrock_llm_config = BedrockLLMConfig(region=os.getenv('BEDROCK_LLM_AWS_REGION', 'us-east-1'),
                                          model_id=os.getenv('BEDROCK_LLM_MODEL_ID', 'anthropic.claude-3-sonnet-20240229-v1:0'),
                                          max_tokens=int(os.getenv('BEDROCK_LLM_MAX_TOKENS', '1024')),
                                          temperature=float(os.getenv('BEDROCK_LLM_TEMPERATURE', '0.2')),
                                          retry_attempts=int(os.getenv('BEDROCK_LLM_RETRY_ATTEMPTS', '3')),
                                          retry_delay=float(os.getenv('BEDROCK_LLM_RETRY_DELAY', '1.0')),
                                          enabled=_env_bool('BEDROCK_LLM_ENABLED', 'false'))

    # Bedrock Embed configuration
    bedrock_embed_config = BedrockEmbedConfig(region=os.getenv('BEDROCK_EMBED_AWS_REGION', 'us-east-1'),
                                              model_id=os.getenv('BEDROCK_EMBED_MODEL_ID', 'amazon.titan-embed-text-v2:0'),
                                              dimension=int(os.getenv('BEDROCK_EMBED_DIMENSION', '1024')),
                                              retry_attempts=int(os.getenv('BEDROCK_EMBED_RETRY_ATTEMPTS', '3')),
                                              retry_delay=float(os.getenv('BEDROCK_EMBED_RETRY_DELAY', '1.0')),
                                              use_mock=_env_bool('BEDROCK_EMBED_USE_MOCK', 'true'),
                                              mock_dimension=int(os.getenv('BEDROCK_EMBED_MOCK_DIMENSION', '384')))

    # Storage configuration
    opensearch_config = OpenSearchConfig(endpoint=os.getenv('OPENSEARCH_ENDPOINT', 'localhost'),
                                         port=int(os.getenv('OPENSEARCH_PORT', '443')),
                                         region=os.getenv('OPENSEARCH_AWS_REGION', 'us-east-1'),
                                         index_prefix=os.getenv('OPENSEARCH_INDEX_PREFIX', 'tiermem'),
                                         use_ssl=_env_bool('OPENSEARCH_USE_SSL', 'true'),
                                         aws_auth=_env_bool('OPENSEARCH_AWS_AUTH', 'true'),
                                         aws_service=os.getenv('OPENSEARCH_AWS_SERVICE', 'es'))

    # Memory tier defaults, overridable per agent through ConfigurationService
    memory_config = MemoryConfig(store_backend=os.getenv('MEMORY_STORE_BACKEND', 'memory'),
                                 stm_capacity=int(os.getenv('MEMORY_STM_CAPACITY', '7')),
                                 mtm_capacity=int(os.getenv('MEMORY_MTM_CAPACITY', '200')),
                                 mtm_fscore_threshold=float(os.getenv('MEMORY_MTM_FSCORE_THRESHOLD', '0.6')),
                                 heat_alpha=float(os.getenv('MEMORY_HEAT_ALPHA', '1.0')),
                                 heat_beta=float(os.getenv('MEMORY_HEAT_BETA', '1.0')),
                                 heat_gamma=float(os.getenv('MEMORY_HEAT_GAMMA', '1.0')),
                                 heat_threshold=float(os.getenv('MEMORY_HEAT_THRESHOLD', '5.0')),
                                 system_memory_importance_threshold=float(
                                     os.getenv('MEMORY_SYSTEM_IMPORTANCE_THRESHOLD', '0.8')),
                                 system_memory_capacity=int(os.getenv('MEMORY_SYSTEM_CAPACITY', '1000')),
                                 recency_time_constant=float(os.getenv('MEMORY_RECENCY_TIME_CONSTANT', '1.0e7')),
                                 stm_retrieval_limit=int(os.getenv('MEMORY_STM_RETRIEVAL_LIMIT', '5')),
                                 mtm_retrieval_limit=int(os.getenv('MEMORY_MTM_RETRIEVAL_LIMIT', '10')),
                                 lpm_retrieval_limit=int(os.getenv('MEMORY_LPM_RETRIEVAL_LIMIT', '8')),
                                 system_retrieval_limit=int(os.getenv('MEMORY_SYSTEM_RETRIEVAL_LIMIT', '3')),
                                 retrieval_timeout=float(os.getenv('MEMORY_RETRIEVAL_TIMEOUT', '30.0')))

    # Background jobs
    job_config = JobConfig(memory_queue_workers=int(os.getenv('JOBS_MEMORY_QUEUE_WORKERS', '10')),
                           default_queue_workers=int(os.getenv('JOBS_DEFAULT_QUEUE_WORKERS', '10')),
                           max_attempts=int(os.getenv('JOBS_MAX_ATTEMPTS', '3')),
                           retry_delay=float(os.getenv('JOBS_RETRY_DELAY', '1.0')),
                           heat_update_interval=float(os.getenv('JOBS_HEAT_UPDATE_INTERVAL', '7200')),
                           lpm_evaluation_interval=float(os.getenv('JOBS_LPM_EVALUATION_INTERVAL', '21600')),
                           system_maintenance_interval=float(os.getenv('JOBS_SYSTEM_MAINTENANCE_INTERVAL', '86400')),
                           job_history=int(os.getenv('JOBS_HISTORY_SIZE', '1000')))

    # MCP configuration
    mcp_config = MCPConfig(transport=os.getenv('MCP_TRANSPORT', 'sse'),
                           host=os.getenv('MCP_HOST', '127.0.0.1'),
                           port=int(os.getenv('MCP_PORT', '8000')))

    return AppConfig(environment=environment,
                     log_level=os.getenv('LOG_LEVEL', 'INFO'),
                     bedrock_llm=bedrock_llm_config,
                     bedrock_embed=bedrock_embed_config,
                     opensearch=opensearch_config,
                     memory=memory_config,
                     jobs=job_config,
                     mcp=mcp_config)


# Global configuration instance
config = load_config()
