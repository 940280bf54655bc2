"""
Configuration management for AWS services and application settings.
"""

import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()


@dataclass
class BedrockLLMConfig:
    """Configuration for Amazon Bedrock text model (Converse API)."""
    region: str
    model_id: str
    max_tokens: int
    temperature: float
    top_p: float
    retry_attempts: int
    retry_delay: float
    timeout_seconds: float


@dataclass
class BedrockSonicConfig:
    """Configuration for Amazon Bedrock bidirectional audio model."""
    region: str
    model_id: str
    input_sample_rate: int
    output_sample_rate: int
    voice_id: str
    chunk_ms: int
    max_tokens: int
    temperature: float
    top_p: float


@dataclass
class RouteBudget:
    """Token and temperature budget for a single agent stage."""
    max_tokens: int
    temperature: float


@dataclass
class BudgetConfig:
    """Per-stage model budgets."""
    dispatcher: RouteBudget
    analyzer: RouteBudget
    planner: RouteBudget
    validator: RouteBudget
    composer: RouteBudget
    voice_chat: RouteBudget


@dataclass
class MemoryConfig:
    """Configuration for session memory."""
    history_cap: int
    recent_window: int
    adaptation_note_cap: int
    recent_notes: int
    user_fact_cap: int
    session_ttl_seconds: float


@dataclass
class StabilizerConfig:
    """Bounds for energy score stabilization between turns."""
    max_rise: int
    max_drop: int
    wide_rise: int
    wide_drop: int
    safety_floor: int
    emergency_floor: int


@dataclass
class RateLimitConfig:
    """Per caller request limits."""
    turn_requests: int
    turn_window_seconds: float
    voice_requests: int
    voice_window_seconds: float


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
    use_mock_wearables: bool
    bedrock_llm: BedrockLLMConfig
    bedrock_sonic: BedrockSonicConfig
    budgets: BudgetConfig
    memory: MemoryConfig
    stabilizer: StabilizerConfig
    rate_limit: RateLimitConfig
    mcp: MCPConfig


def _budget(stage: str, max_tokens: int, temperature: float) -> RouteBudget:
    return RouteBudget(max_tokens=int(os.getenv(f'BUDGET_{stage}_MAX_TOKENS', str(max_tokens))),
                       temperature=float(os.getenv(f'BUDGET_{stage}_TEMPERATURE', str(temperature))))


def load_config() -> AppConfig:
    """Load configuration from environment variables with defaults."""
    environment = os.getenv('ENVIRONMENT', 'development')
    region = os.getenv('AWS_REGION', 'us-east-1')

    # Bedrock text configuration
    bedrock_llm_config = BedrockLLMConfig(region=os.getenv('BEDROCK_LLM_AWS_REGION', region),
                                          model_id=os.getenv('BEDROCK_MODEL_ID_LITE', 'us.amazon.nova-2-lite-v1:0'),
                                          max_tokens=int(os.getenv('BEDROCK_LLM_MAX_TOKENS', '500')),
                                          temperature=float(os.getenv('BEDROCK_LLM_TEMPERATURE', '0.4')),
                                          top_p=float(os.getenv('BEDROCK_LLM_TOP_P', '0.9')),
                                          retry_attempts=int(os.getenv('BEDROCK_LLM_RETRY_ATTEMPTS', '3')),
                                          retry_delay=float(os.getenv('BEDROCK_LLM_RETRY_DELAY', '0.5')),
                                          timeout_seconds=float(os.getenv('BEDROCK_LLM_TIMEOUT_SECONDS', '12')))

    # Bedrock audio configuration
    bedrock_sonic_config = BedrockSonicConfig(region=os.getenv('BEDROCK_SONIC_AWS_REGION', region),
                                              model_id=os.getenv('BEDROCK_MODEL_ID_SONIC', 'amazon.nova-sonic-v1:0'),
                                              input_sample_rate=int(os.getenv('SONIC_INPUT_SAMPLE_RATE', '16000')),
                                              output_sample_rate=int(os.getenv('SONIC_OUTPUT_SAMPLE_RATE', '24000')),
                                              voice_id=os.getenv('SONIC_VOICE_ID', 'tiffany'),
                                              chunk_ms=int(os.getenv('SONIC_CHUNK_MS', '32')),
                                              max_tokens=int(os.getenv('SONIC_MAX_TOKENS', '512')),
                                              temperature=float(os.getenv('SONIC_TEMPERATURE', '0.7')),
                                              top_p=float(os.getenv('SONIC_TOP_P', '0.9')))

    budgets = BudgetConfig(dispatcher=_budget('DISPATCHER', 80, 0.1),
                           analyzer=_budget('ANALYZER', 600, 0.2),
                           planner=_budget('PLANNER', 600, 0.35),
                           validator=_budget('VALIDATOR', 200, 0.1),
                           composer=_budget('COMPOSER', 500, 0.5),
                           voice_chat=_budget('VOICE_CHAT', 300, 0.7))

    memory_config = MemoryConfig(history_cap=int(os.getenv('MEMORY_HISTORY_CAP', '16')),
                                 recent_window=int(os.getenv('MEMORY_RECENT_WINDOW', '8')),
                                 adaptation_note_cap=int(os.getenv('MEMORY_ADAPTATION_NOTE_CAP', '10')),
                                 recent_notes=int(os.getenv('MEMORY_RECENT_NOTES', '3')),
                                 user_fact_cap=int(os.getenv('MEMORY_USER_FACT_CAP', '20')),
                                 session_ttl_seconds=float(os.getenv('MEMORY_SESSION_TTL_SECONDS', str(6 * 60 * 60))))

    stabilizer_config = StabilizerConfig(max_rise=int(os.getenv('ENERGY_MAX_RISE', '15')),
                                         max_drop=int(os.getenv('ENERGY_MAX_DROP', '15')),
                                         wide_rise=int(os.getenv('ENERGY_WIDE_RISE', '30')),
                                         wide_drop=int(os.getenv('ENERGY_WIDE_DROP', '30')),
                                         safety_floor=int(os.getenv('ENERGY_SAFETY_FLOOR', '20')),
                                         emergency_floor=int(os.getenv('ENERGY_EMERGENCY_FLOOR', '5')))

    rate_limit_config = RateLimitConfig(turn_requests=int(os.getenv('RATE_LIMIT_TURN_REQUESTS', '20')),
                                        turn_window_seconds=float(os.getenv('RATE_LIMIT_TURN_WINDOW_SECONDS', '60')),
                                        voice_requests=int(os.getenv('RATE_LIMIT_VOICE_REQUESTS', '15')),
                                        voice_window_seconds=float(os.getenv('RATE_LIMIT_VOICE_WINDOW_SECONDS', '60')))

    # MCP configuration
    mcp_config = MCPConfig(transport=os.getenv('MCP_TRANSPORT', 'sse'),
                           host=os.getenv('MCP_HOST', '127.0.0.1'),
                           port=int(os.getenv('MCP_PORT', '8000')))

    return AppConfig(environment=environment,
                     log_level=os.getenv('LOG_LEVEL', 'INFO'),
                     use_mock_wearables=os.getenv('USE_MOCK_WEARABLES', 'true').lower() != 'false',
                     bedrock_llm=bedrock_llm_config,
                     bedrock_sonic=bedrock_sonic_config,
                     budgets=budgets,
                     memory=memory_config,
                     stabilizer=stabilizer_config,
                     rate_limit=rate_limit_config,
                     mcp=mcp_config)


# Global configuration instance
config = load_config()
