"""
MCP Interface Layer using fastmcp: coaching tools plus the HTTP routes.
"""
from typing import Any, Dict, Optional

from fastmcp import FastMCP
from pydantic import ValidationError

from .http_routes import HttpRoutes
from .models.core import TurnRequest
from .models.requests import describe_validation_error, parse_user_context
from .services.coordinator import AgentCoordinator, ModelHardFailure
from .services.session_memory import SessionMemoryStore
from .services.voice import VoicePipeline
from .utils.bedrock_llm import BedrockLLM
from .utils.bedrock_sonic import BedrockSonicStream
from .utils.config import config
from .utils.logging_config import get_logger
from .utils.sanitize import is_valid_session_id

logger = get_logger(__name__)


class CoachingTools:
    """MCP tool implementations bound to one coordinator."""

    def __init__(self, coordinator: AgentCoordinator):
        self.coordinator = coordinator

    async def submit_turn(self,
                          session_id: str,
                          message: str,
                          feedback: Optional[str] = None,
                          user_context: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Submit a user turn to the coaching pipeline.

        Args:
            session_id: Session key (8-80 letters, digits or dashes)
            message: User message
            feedback: Optional feedback on the previous plan
            user_context: Optional name, goals, constraints and health data

        Returns:
            Structured turn result with reply, route, analysis and plan

        Raises:
            Exception: If the session id is invalid or the turn fails
        """
        if not is_valid_session_id(session_id):
            raise ValueError('Invalid session id')
        try:
            context = parse_user_context(user_context)
        except ValidationError as e:
            raise ValueError(f'Invalid userContext: {describe_validation_error(e)}')

        try:
            result = await self.coordinator.run_turn(
                TurnRequest(session_id=session_id, message=message or '', feedback=feedback, user_context=context))
        except ModelHardFailure as e:
            logger.error(f'Turn failed in MCP submit_turn during {e.stage}')
            raise Exception(e.public_message)

        logger.debug(f'MCP turn completed for session {session_id[:8]} ({result.route.value})')
        return result.to_dict()

    def session_status(self, session_id: str) -> Dict[str, Any]:
        """Get the session memory size and wearable snapshot.

        Args:
            session_id: Session key

        Returns:
            Session status dictionary
        """
        if not is_valid_session_id(session_id):
            raise ValueError('Invalid session id')
        return self.coordinator.session_status(session_id)


def create_server(coordinator: Optional[AgentCoordinator] = None, voice: Optional[VoicePipeline] = None) -> FastMCP:
    """
    Build the FastMCP server with tools and HTTP routes registered.

    Args:
        coordinator: Coordinator to serve, built from configuration if None
        voice: Voice pipeline, built over the Bedrock audio stream if None

    Returns:
        FastMCP application
    """
    if coordinator is None:
        coordinator = AgentCoordinator(BedrockLLM(config.bedrock_llm), SessionMemoryStore(config.memory))
    if voice is None:
        voice = VoicePipeline(coordinator, stream_factory=lambda: BedrockSonicStream(config.bedrock_sonic).open())

    server = FastMCP('WellCoach')
    tools = CoachingTools(coordinator)
    server.tool(name='submit_turn')(tools.submit_turn)
    server.tool(name='session_status')(tools.session_status)

    routes = HttpRoutes(coordinator, voice)
    for path, methods, handler in routes.table():
        server.custom_route(path, methods=methods)(handler)

    return server


# Initialize FastMCP application
mcp = create_server()

if __name__ == '__main__':
    transport = config.mcp.transport
    host = config.mcp.host
    port = config.mcp.port
    mcp.run(transport=transport, host=host, port=port)
