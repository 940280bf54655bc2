"""
Voice pipeline: speech-to-speech sessions over the bidirectional audio model,
and transcript turns run through the text coordinator in voice mode.
"""

import asyncio
import base64
import json
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterator, List, Optional, Union

from ..models.core import Role, Turn, TurnRequest, TurnResult, UserContext
from ..utils.bedrock_sonic import BedrockSonicError, BidirectionalStream
from ..utils.config import BedrockSonicConfig
from ..utils.config import config as app_config
from ..utils.logging_config import get_logger, log_stage
from .prompts import VOICE_CHAT_SYSTEM_PROMPT

logger = get_logger(__name__)

CHUNK_SECONDS = 0.032
BYTES_PER_SAMPLE = 2
MAX_AUDIO_BYTES = 2 * 1024 * 1024
MAX_TRANSCRIPT_LENGTH = 500
SUPPORTED_SAMPLE_RATES = (8000, 16000, 24000)
SESSION_TIMEOUT_SECONDS = 30.0

StreamFactory = Callable[[], Awaitable[BidirectionalStream]]


class VoiceProtocolError(Exception):
    """Custom exception for malformed voice input."""
    pass


class VoiceSessionFailure(VoiceProtocolError):
    """Raised when the upstream audio session fails or times out."""
    pass


def chunk_size(sample_rate: int) -> int:
    """Bytes of 16-bit mono PCM covering one input chunk."""
    return int(sample_rate * BYTES_PER_SAMPLE * CHUNK_SECONDS)


class VoiceSessionBuilder:
    """Builds the ordered input events of one audio model session.

    Every content segment is framed by contentStart/contentEnd under a single
    prompt name. The builder is pure: it only produces event dictionaries.
    """

    def __init__(self, config: BedrockSonicConfig, prompt_name: Optional[str] = None):
        self.config = config
        self.prompt_name = prompt_name or f'voice-{uuid.uuid4().hex[:12]}'

    def session_start(self) -> Dict[str, Any]:
        return {
            'event': {
                'sessionStart': {
                    'inferenceConfiguration': {
                        'maxTokens': self.config.max_tokens,
                        'topP': self.config.top_p,
                        'temperature': self.config.temperature
                    }
                }
            }
        }

    def prompt_start(self) -> Dict[str, Any]:
        return {
            'event': {
                'promptStart': {
                    'promptName': self.prompt_name,
                    'textOutputConfiguration': {
                        'mediaType': 'text/plain'
                    },
                    'audioOutputConfiguration': {
                        'mediaType': 'audio/lpcm',
                        'sampleRateHertz': self.config.output_sample_rate,
                        'sampleSizeBits': 16,
                        'channelCount': 1,
                        'voiceId': self.config.voice_id,
                        'encoding': 'base64',
                        'audioType': 'SPEECH'
                    }
                }
            }
        }

    def text_content(self, content_name: str, role: str, text: str, interactive: bool = False) -> List[Dict[str, Any]]:
        """contentStart, textInput and contentEnd for one text segment."""
        return [
            {
                'event': {
                    'contentStart': {
                        'promptName': self.prompt_name,
                        'contentName': content_name,
                        'type': 'TEXT',
                        'interactive': interactive,
                        'role': role,
                        'textInputConfiguration': {
                            'mediaType': 'text/plain'
                        }
                    }
                }
            },
            {
                'event': {
                    'textInput': {
                        'promptName': self.prompt_name,
                        'contentName': content_name,
                        'content': text
                    }
                }
            },
            self.content_end(content_name),
        ]

    def audio_content_start(self, content_name: str, sample_rate: int) -> Dict[str, Any]:
        return {
            'event': {
                'contentStart': {
                    'promptName': self.prompt_name,
                    'contentName': content_name,
                    'type': 'AUDIO',
                    'interactive': True,
                    'role': 'USER',
                    'audioInputConfiguration': {
                        'mediaType': 'audio/lpcm',
                        'sampleRateHertz': sample_rate,
                        'sampleSizeBits': 16,
                        'channelCount': 1,
                        'audioType': 'SPEECH',
                        'encoding': 'base64'
                    }
                }
            }
        }

    def audio_chunks(self, content_name: str, audio: bytes, sample_rate: int) -> Iterator[Dict[str, Any]]:
        """audioInput events of chunk_size(sample_rate) bytes each, in order."""
        size = chunk_size(sample_rate)
        for offset in range(0, len(audio), size):
            yield {
                'event': {
                    'audioInput': {
                        'promptName': self.prompt_name,
                        'contentName': content_name,
                        'content': base64.b64encode(audio[offset:offset + size]).decode('ascii')
                    }
                }
            }

    def content_end(self, content_name: str) -> Dict[str, Any]:
        return {'event': {'contentEnd': {'promptName': self.prompt_name, 'contentName': content_name}}}

    def prompt_end(self) -> Dict[str, Any]:
        return {'event': {'promptEnd': {'promptName': self.prompt_name}}}

    def session_end(self) -> Dict[str, Any]:
        return {'event': {'sessionEnd': {}}}

    def audio_turn_events(self, system_prompt: str, audio: bytes, sample_rate: int) -> List[Dict[str, Any]]:
        """
        Full event sequence for a spoken user turn.

        Args:
            system_prompt: Instructions sent as the SYSTEM text segment
            audio: 16-bit mono PCM
            sample_rate: Sample rate of audio in Hz

        Returns:
            Ordered list of input events, sessionStart first and sessionEnd last
        """
        events = [self.session_start(), self.prompt_start()]
        events.extend(self.text_content('system', 'SYSTEM', system_prompt))
        events.append(self.audio_content_start('user-audio', sample_rate))
        events.extend(self.audio_chunks('user-audio', audio, sample_rate))
        events.extend([self.content_end('user-audio'), self.prompt_end(), self.session_end()])
        return events

    def text_turn_events(self, system_prompt: str, text: str) -> List[Dict[str, Any]]:
        """Event sequence for a typed user turn answered with speech."""
        events = [self.session_start(), self.prompt_start()]
        events.extend(self.text_content('system', 'SYSTEM', system_prompt))
        events.extend(self.text_content('user-text', 'USER', text, interactive=True))
        events.extend([self.prompt_end(), self.session_end()])
        return events


@dataclass
class VoiceResponseCollector:
    """Accumulates output frames of an audio session in arrival order."""
    transcript_parts: List[str] = field(default_factory=list)
    reply_parts: List[str] = field(default_factory=list)
    audio_chunks: List[bytes] = field(default_factory=list)
    skipped: int = 0
    completed: bool = False

    def feed(self, frame: Union[bytes, str, Dict[str, Any]]) -> Optional[str]:
        """
        Record one output frame.

        Returns:
            The event name, or None if the frame could not be parsed
        """
        try:
            parsed = json.loads(frame) if isinstance(frame, (bytes, str)) else frame
            event = parsed['event']
            name = next(iter(event))
        except (ValueError, KeyError, TypeError, StopIteration):
            self.skipped += 1
            return None

        body = event[name] or {}
        if name == 'textOutput':
            content = body.get('content', '')
            if body.get('role') == 'USER':
                self.transcript_parts.append(content)
            elif body.get('role') == 'ASSISTANT':
                self.reply_parts.append(content)
        elif name == 'audioOutput' and body.get('content'):
            try:
                self.audio_chunks.append(base64.b64decode(body['content']))
            except ValueError:
                self.skipped += 1
        elif name == 'completionEnd':
            self.completed = True
        return name

    @property
    def transcript(self) -> str:
        return ''.join(self.transcript_parts)

    @property
    def text(self) -> str:
        return ''.join(self.reply_parts)

    @property
    def audio(self) -> bytes:
        return b''.join(self.audio_chunks)


@dataclass
class VoiceTurnResult:
    session_id: str
    transcript: str
    text: str
    audio: bytes
    sample_rate: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            'success': True,
            'session_id': self.session_id,
            'transcript': self.transcript,
            'text': self.text,
            'audioBase64': base64.b64encode(self.audio).decode('ascii'),
            'sampleRate': self.sample_rate,
        }


class VoicePipeline:
    """Runs voice turns.

    speak() exchanges audio with the bidirectional model; chat() sends a
    client-side transcript through the coordinator in voice mode.
    """

    def __init__(self,
                 coordinator: Any,
                 stream_factory: Optional[StreamFactory] = None,
                 config: Optional[BedrockSonicConfig] = None,
                 timeout_seconds: float = SESSION_TIMEOUT_SECONDS):
        self.coordinator = coordinator
        self.stream_factory = stream_factory
        self.config = config or app_config.bedrock_sonic
        self.timeout_seconds = timeout_seconds

    async def speak(self,
                    session_id: str,
                    audio: bytes,
                    sample_rate: Optional[int] = None,
                    system_prompt: str = VOICE_CHAT_SYSTEM_PROMPT) -> VoiceTurnResult:
        """
        Run one speech-to-speech turn and store the exchange in session memory.

        Args:
            session_id: Session key
            audio: 16-bit mono PCM spoken by the user
            sample_rate: Sample rate of audio, default from configuration

        Returns:
            VoiceTurnResult with transcript, reply text and concatenated reply audio

        Raises:
            VoiceProtocolError: If the input is invalid
            VoiceSessionFailure: If the audio session fails or times out
        """
        sample_rate = sample_rate or self.config.input_sample_rate
        if not audio:
            raise VoiceProtocolError('No audio data provided')
        if len(audio) > MAX_AUDIO_BYTES:
            raise VoiceProtocolError('Audio too large, maximum 2 MB')
        if sample_rate not in SUPPORTED_SAMPLE_RATES:
            raise VoiceProtocolError(f'Unsupported sample rate: {sample_rate}')
        if self.stream_factory is None:
            raise VoiceSessionFailure('No audio model stream configured')

        events = VoiceSessionBuilder(self.config).audio_turn_events(system_prompt, audio, sample_rate)
        log_stage(logger, logging.INFO, 'voice',
                  f'Processing voice input ({len(audio) // 1024} KB, {sample_rate}Hz, {len(events)} events)', session_id)

        try:
            collector = await asyncio.wait_for(self._exchange(events), self.timeout_seconds)
        except asyncio.TimeoutError as e:
            raise VoiceSessionFailure('Voice session timed out') from e
        except BedrockSonicError as e:
            log_stage(logger, logging.ERROR, 'voice', f'Audio session failed: {e}', session_id)
            raise VoiceSessionFailure('Voice processing failed') from e

        if collector.skipped:
            log_stage(logger, logging.DEBUG, 'voice', f'Skipped {collector.skipped} unparseable frames', session_id)
        log_stage(logger, logging.INFO, 'voice', f'Voice response: transcript="{collector.transcript[:50]}", '
                  f'reply="{collector.text[:50]}", audio={len(collector.audio) // 1024}KB', session_id)

        await self._remember(session_id, collector.transcript, collector.text)
        return VoiceTurnResult(session_id=session_id,
                               transcript=collector.transcript,
                               text=collector.text,
                               audio=collector.audio,
                               sample_rate=self.config.output_sample_rate)

    async def chat(self, session_id: str, transcript: str, user_context: Optional[UserContext] = None) -> TurnResult:
        """
        Answer a client-side transcript through the coordinator in voice mode.

        Raises:
            VoiceProtocolError: If the transcript is empty
        """
        transcript = (transcript or '').strip()[:MAX_TRANSCRIPT_LENGTH]
        if not transcript:
            raise VoiceProtocolError('Missing transcript')
        log_stage(logger, logging.INFO, 'voice', f'Voice chat: "{transcript[:60]}"', session_id)
        return await self.coordinator.run_turn(
            TurnRequest(session_id=session_id, message=transcript, user_context=user_context, mode='voice'))

    async def _exchange(self, events: List[Dict[str, Any]]) -> VoiceResponseCollector:
        stream = await self.stream_factory()
        collector = VoiceResponseCollector()
        sender = asyncio.create_task(self._send_all(stream, events))
        try:
            while True:
                frame = await stream.receive()
                if frame is None:
                    break
                collector.feed(frame)
            await sender
        finally:
            if not sender.done():
                sender.cancel()
            try:
                await sender
            except asyncio.CancelledError:
                pass
            except BedrockSonicError as e:
                logger.debug(f'Voice input stream stopped: {e}')
            await stream.close()
        return collector

    async def _send_all(self, stream: BidirectionalStream, events: List[Dict[str, Any]]) -> None:
        for event in events:
            await stream.send(event)

    async def _remember(self, session_id: str, transcript: str, reply: str) -> None:
        if not transcript and not reply:
            return
        memory = self.coordinator.memory
        async with memory.session_lock(session_id):
            if transcript:
                memory.append(session_id, Turn(role=Role.USER, content=transcript))
            if reply:
                memory.append(session_id, Turn(role=Role.ASSISTANT, content=reply))
