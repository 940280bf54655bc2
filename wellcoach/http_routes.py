"""
HTTP routes for turn submission, session status and voice.

Handlers are plain Starlette endpoints; mcp_interface mounts them on the
FastMCP server and create_app() serves them standalone.
"""

import asyncio
import base64
import binascii
import uuid
from typing import Any, AsyncIterator, Dict, Optional, Type, TypeVar

from pydantic import BaseModel, ValidationError
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, Response, StreamingResponse
from starlette.routing import Route

from .models.core import ImageAttachment, TurnRequest
from .models.requests import TurnBody, VoiceBody, VoiceChatBody, describe_validation_error
from .services.coordinator import AgentCoordinator, ModelHardFailure
from .services.streaming import PUBLIC_ERROR_MESSAGE, stream_turn
from .services.voice import MAX_AUDIO_BYTES, VoicePipeline, VoiceProtocolError, VoiceSessionFailure
from .utils.config import RateLimitConfig
from .utils.config import config as app_config
from .utils.health_check import get_system_info
from .utils.logging_config import get_logger
from .utils.rate_limit import RateLimiter, RateLimitResult
from .utils.sanitize import is_valid_session_id

logger = get_logger(__name__)

BodyModel = TypeVar('BodyModel', bound=BaseModel)

SSE_HEADERS = {'Cache-Control': 'no-cache', 'Connection': 'keep-alive', 'X-Accel-Buffering': 'no'}


class RequestError(Exception):
    """Custom exception for malformed request bodies."""

    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.status_code = status_code


def caller_identity(request: Request) -> str:
    """Rate-limit key: the X-Caller-Id header, else the client host."""
    caller = request.headers.get('x-caller-id')
    if caller:
        return caller.strip()[:128]
    return request.client.host if request.client else 'unknown'


def error_response(message: str, status_code: int, headers: Optional[Dict[str, str]] = None) -> JSONResponse:
    return JSONResponse({'success': False, 'error': message}, status_code=status_code, headers=headers)


def validate_body(model: Type[BodyModel], payload: Any) -> BodyModel:
    """
    Validate a JSON body against a request model.

    Raises:
        RequestError: If the body is not an object or a field fails validation
    """
    if not isinstance(payload, dict):
        raise RequestError('Request body must be a JSON object')
    try:
        return model.model_validate(payload)
    except ValidationError as e:
        raise RequestError(f'Invalid request: {describe_validation_error(e)}')


def parse_image(body: TurnBody) -> Optional[ImageAttachment]:
    """Decode an optional base64 image from the request body."""
    if body.image is not None:
        data, image_format = body.image.data, body.image.format
    else:
        data, image_format = body.image_base64, body.image_format
    if not data:
        return None
    try:
        return ImageAttachment(data=base64.b64decode(data, validate=True), format=image_format.lower())
    except (binascii.Error, ValueError) as e:
        raise RequestError(f'Invalid image: {e}')


def parse_turn_request(payload: Any) -> TurnRequest:
    """
    Build a TurnRequest from a JSON body.

    An invalid or missing session id is replaced by a new UUID.

    Raises:
        RequestError: If the body fails validation or carries neither message nor image
    """
    body = validate_body(TurnBody, payload)
    image = parse_image(body)
    if not body.message.strip() and image is None:
        raise RequestError('Missing message or image')

    session_id = body.session_id
    if not is_valid_session_id(session_id):
        session_id = str(uuid.uuid4())

    feedback = body.feedback if body.feedback and body.feedback.strip() else None
    return TurnRequest(session_id=session_id,
                       message=body.message,
                       feedback=feedback,
                       image=image,
                       user_context=body.user_context.to_context() if body.user_context else None,
                       streaming=body.streaming)


async def read_json(request: Request) -> Any:
    try:
        return await request.json()
    except ValueError:
        raise RequestError('Invalid JSON body')


class HttpRoutes:
    """Endpoint handlers bound to one coordinator and voice pipeline."""

    def __init__(self,
                 coordinator: AgentCoordinator,
                 voice: Optional[VoicePipeline] = None,
                 rate_limit: Optional[RateLimitConfig] = None):
        rate_limit = rate_limit or app_config.rate_limit
        self.coordinator = coordinator
        self.voice = voice or VoicePipeline(coordinator)
        self.turn_limiter = RateLimiter(rate_limit.turn_requests, rate_limit.turn_window_seconds)
        self.voice_limiter = RateLimiter(rate_limit.voice_requests, rate_limit.voice_window_seconds)

    def _limited(self, limit: RateLimitResult) -> Optional[JSONResponse]:
        if limit.allowed:
            return None
        return error_response('Too many requests. Please wait a moment.', 429, limit.headers())

    async def submit_turn(self, request: Request) -> Response:
        """POST /api/turn: JSON result, or an event stream when streaming is requested."""
        limit = self.turn_limiter.check(caller_identity(request))
        limited = self._limited(limit)
        if limited is not None:
            return limited

        try:
            turn = parse_turn_request(await read_json(request))
        except RequestError as e:
            return error_response(str(e), e.status_code, limit.headers())

        if turn.streaming:
            return StreamingResponse(self._sse_body(turn),
                                     media_type='text/event-stream',
                                     headers={
                                         **SSE_HEADERS,
                                         **limit.headers()
                                     })

        try:
            result = await self.coordinator.run_turn(turn)
        except ModelHardFailure as e:
            return error_response(e.public_message, 500, limit.headers())
        except Exception as e:
            logger.error(f'Unexpected error in turn for session {turn.session_id[:8]}: {e!r}')
            return error_response(PUBLIC_ERROR_MESSAGE, 500, limit.headers())
        return JSONResponse(result.to_dict(), headers=limit.headers())

    async def _sse_body(self, turn: TurnRequest) -> AsyncIterator[str]:
        events = stream_turn(self.coordinator, turn)
        try:
            async for event in events:
                yield event.to_sse()
        finally:
            await events.aclose()

    async def session_status(self, request: Request) -> Response:
        """GET /api/session/{session_id}: memory size and wearable snapshot."""
        session_id = request.path_params.get('session_id')
        if not is_valid_session_id(session_id):
            return error_response('Invalid session id', 400)
        return JSONResponse({'success': True, **self.coordinator.session_status(session_id)})

    async def voice_turn(self, request: Request) -> Response:
        """POST /api/voice: speech in, transcript plus spoken reply out."""
        limit = self.voice_limiter.check(f'voice:{caller_identity(request)}')
        limited = self._limited(limit)
        if limited is not None:
            return limited

        try:
            body = validate_body(VoiceBody, await read_json(request))
            if not body.audio_base64:
                raise RequestError('No audio data provided.')
            try:
                audio = base64.b64decode(body.audio_base64, validate=True)
            except (binascii.Error, ValueError):
                raise RequestError('Invalid audio encoding.')
            if len(audio) > MAX_AUDIO_BYTES:
                raise RequestError('Audio too large. Maximum 2 MB.', 413)
        except RequestError as e:
            return error_response(str(e), e.status_code, limit.headers())

        session_id = body.session_id
        if not is_valid_session_id(session_id):
            session_id = str(uuid.uuid4())

        try:
            result = await self.voice.speak(session_id, audio, body.sample_rate)
        except VoiceSessionFailure:
            return error_response('Voice processing failed. Please try again.', 502, limit.headers())
        except VoiceProtocolError as e:
            return error_response(str(e), 400, limit.headers())
        return JSONResponse(result.to_dict(), headers=limit.headers())

    async def voice_chat(self, request: Request) -> Response:
        """POST /api/voice-chat: client-side transcript answered in voice style."""
        limit = self.voice_limiter.check(f'voice-chat:{caller_identity(request)}')
        limited = self._limited(limit)
        if limited is not None:
            return limited

        try:
            payload = await read_json(request)
        except RequestError as e:
            return error_response(str(e), e.status_code, limit.headers())
        if not isinstance(payload, dict) or not is_valid_session_id(payload.get('sessionId')):
            return error_response('Missing transcript or sessionId.', 400, limit.headers())
        try:
            body = validate_body(VoiceChatBody, payload)
        except RequestError as e:
            return error_response(str(e), e.status_code, limit.headers())

        context = body.user_context.to_context() if body.user_context else None
        try:
            result = await self.voice.chat(body.session_id, body.transcript, context)
        except VoiceProtocolError:
            return error_response('Missing transcript or sessionId.', 400, limit.headers())
        except ModelHardFailure as e:
            return error_response(e.public_message, 500, limit.headers())
        return JSONResponse(result.to_dict(), headers=limit.headers())

    async def health(self, request: Request) -> Response:
        """GET /api/health: component health and configuration summary."""
        info = await asyncio.to_thread(get_system_info, self.coordinator.llm, self.coordinator.memory)
        healthy = info['health_status']['bedrock_llm']['healthy']
        return JSONResponse(info, status_code=200 if healthy else 503)

    def table(self):
        """(path, methods, handler) for every endpoint."""
        return [
            ('/api/turn', ['POST'], self.submit_turn),
            ('/api/session/{session_id}', ['GET'], self.session_status),
            ('/api/voice', ['POST'], self.voice_turn),
            ('/api/voice-chat', ['POST'], self.voice_chat),
            ('/api/health', ['GET'], self.health),
        ]


def create_app(routes: HttpRoutes) -> Starlette:
    """Standalone Starlette application serving the HTTP routes."""
    return Starlette(routes=[Route(path, handler, methods=methods) for path, methods, handler in routes.table()])
