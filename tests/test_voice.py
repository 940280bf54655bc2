import asyncio
import base64
import gc
import json

import pytest

from wellcoach.models.core import Role
from wellcoach.services.coordinator import AgentCoordinator
from wellcoach.services.voice import (VoicePipeline, VoiceProtocolError, VoiceResponseCollector, VoiceSessionBuilder,
                                      VoiceSessionFailure, chunk_size)
from wellcoach.utils.bedrock_sonic import BedrockSonicError
from wellcoach.utils.config import BedrockSonicConfig

from .conftest import FakeLLM

SESSION = 'session-voice-1'
SONIC_CONFIG = BedrockSonicConfig(region='us-east-1',
                                  model_id='amazon.nova-sonic-v1:0',
                                  input_sample_rate=16000,
                                  output_sample_rate=24000,
                                  voice_id='matthew',
                                  chunk_ms=32,
                                  max_tokens=1024,
                                  temperature=0.7,
                                  top_p=0.9)


def _frame(name, **body):
    return json.dumps({'event': {name: body}}).encode('utf-8')


REPLY_FRAMES = [
    _frame('contentStart', role='USER'),
    _frame('textOutput', role='USER', content='I slept badly'),
    _frame('textOutput', role='ASSISTANT', content='Sorry to hear that. '),
    b'not json at all',
    _frame('audioOutput', content=base64.b64encode(b'\x01\x02').decode('ascii')),
    _frame('textOutput', role='ASSISTANT', content='Try an early night.'),
    _frame('audioOutput', content=base64.b64encode(b'\x03\x04').decode('ascii')),
    _frame('completionEnd'),
]


class FakeStream:
    """Bidirectional stream that answers once the client has ended its session."""

    def __init__(self, frames=(), receive_error=None, hang=False):
        self.frames = list(frames)
        self.receive_error = receive_error
        self.hang = hang
        self.sent = []
        self.closed = False
        self._session_ended = asyncio.Event()

    async def send(self, event):
        self.sent.append(event)
        if 'sessionEnd' in event['event']:
            self._session_ended.set()

    async def receive(self):
        if self.hang:
            await asyncio.sleep(3600)
        if self.receive_error is not None:
            raise self.receive_error
        await self._session_ended.wait()
        return self.frames.pop(0) if self.frames else None

    async def close(self):
        self.closed = True


@pytest.fixture
def coordinator(memory, stabilizer_config):
    return AgentCoordinator(FakeLLM(), memory, stabilizer=stabilizer_config)


def _pipeline(coordinator, stream, timeout_seconds=5.0):

    async def factory():
        return stream

    return VoicePipeline(coordinator, stream_factory=factory, config=SONIC_CONFIG, timeout_seconds=timeout_seconds)


def _event_names(events):
    return [next(iter(event['event'])) for event in events]


def test_chunk_size_covers_32ms_of_16bit_audio():
    assert chunk_size(16000) == 1024
    assert chunk_size(8000) == 512
    assert chunk_size(24000) == 1536


def test_audio_turn_event_order():
    builder = VoiceSessionBuilder(SONIC_CONFIG, prompt_name='prompt-1')
    events = builder.audio_turn_events('Be kind.', b'\x00' * 2500, 16000)

    assert _event_names(events) == [
        'sessionStart', 'promptStart', 'contentStart', 'textInput', 'contentEnd', 'contentStart', 'audioInput',
        'audioInput', 'audioInput', 'contentEnd', 'promptEnd', 'sessionEnd'
    ]
    assert events[2]['event']['contentStart']['role'] == 'SYSTEM'
    assert events[5]['event']['contentStart']['audioInputConfiguration']['sampleRateHertz'] == 16000
    chunks = [base64.b64decode(event['event']['audioInput']['content']) for event in events[6:9]]
    assert [len(chunk) for chunk in chunks] == [1024, 1024, 452]
    assert all(event['event'][name].get('promptName', 'prompt-1') == 'prompt-1'
               for event, name in zip(events, _event_names(events)))


def test_text_turn_events_frame_each_segment():
    builder = VoiceSessionBuilder(SONIC_CONFIG)
    events = builder.text_turn_events('Be kind.', 'hello')
    names = _event_names(events)
    assert names.count('contentStart') == names.count('contentEnd') == 2
    assert events[5]['event']['contentStart']['interactive'] is True
    assert events[6]['event']['textInput']['content'] == 'hello'


def test_collector_accumulates_in_order():
    collector = VoiceResponseCollector()
    names = [collector.feed(frame) for frame in REPLY_FRAMES]

    assert names[3] is None
    assert collector.skipped == 1
    assert collector.transcript == 'I slept badly'
    assert collector.text == 'Sorry to hear that. Try an early night.'
    assert collector.audio == b'\x01\x02\x03\x04'
    assert collector.completed


def test_speak_exchanges_audio_and_remembers_turns(coordinator, memory):
    stream = FakeStream(REPLY_FRAMES)
    result = asyncio.run(_pipeline(coordinator, stream).speak(SESSION, b'\x00' * 4096))

    assert result.transcript == 'I slept badly'
    assert result.audio == b'\x01\x02\x03\x04'
    assert result.to_dict()['sampleRate'] == 24000
    assert result.to_dict()['audioBase64'] == base64.b64encode(b'\x01\x02\x03\x04').decode('ascii')
    assert stream.closed
    assert _event_names(stream.sent)[-1] == 'sessionEnd'

    history = memory.recent_history(SESSION)
    assert [(turn.role, turn.content) for turn in history] == [
        (Role.USER, 'I slept badly'),
        (Role.ASSISTANT, 'Sorry to hear that. Try an early night.'),
    ]


@pytest.mark.parametrize('audio,sample_rate', [(b'', 16000), (b'\x00' * (2 * 1024 * 1024 + 1), 16000),
                                               (b'\x00' * 64, 44100)])
def test_speak_rejects_invalid_input(coordinator, audio, sample_rate):
    pipeline = _pipeline(coordinator, FakeStream())
    with pytest.raises(VoiceProtocolError):
        asyncio.run(pipeline.speak(SESSION, audio, sample_rate))


def test_upstream_error_becomes_session_failure(coordinator, memory):
    stream = FakeStream(receive_error=BedrockSonicError('stream reset'))
    with pytest.raises(VoiceSessionFailure):
        asyncio.run(_pipeline(coordinator, stream).speak(SESSION, b'\x00' * 64))
    assert stream.closed
    assert memory.size(SESSION) == 0


def test_hanging_session_times_out(coordinator):
    stream = FakeStream(hang=True)
    with pytest.raises(VoiceSessionFailure):
        asyncio.run(_pipeline(coordinator, stream, timeout_seconds=0.05).speak(SESSION, b'\x00' * 64))
    assert stream.closed


def test_missing_stream_factory_is_a_session_failure(coordinator):
    pipeline = VoicePipeline(coordinator, config=SONIC_CONFIG)
    with pytest.raises(VoiceSessionFailure):
        asyncio.run(pipeline.speak(SESSION, b'\x00' * 64))


def test_chat_runs_coordinator_in_voice_mode(coordinator, memory):
    result = asyncio.run(VoicePipeline(coordinator, config=SONIC_CONFIG).chat(SESSION, '  I am tired after work  '))

    assert result.reply.startswith('Long day, huh?')
    assert memory.recent_history(SESSION)[0].content == 'I am tired after work'
    assert [call[1] for call in coordinator.llm.calls if call[0] == 'composer'] == ['converse']


def test_chat_requires_transcript(coordinator):
    with pytest.raises(VoiceProtocolError):
        asyncio.run(VoicePipeline(coordinator, config=SONIC_CONFIG).chat(SESSION, '   '))


class FailingSendStream(FakeStream):
    """Stream whose input side breaks just before the output side resets."""

    async def send(self, event):
        raise BedrockSonicError('send failed')

    async def receive(self):
        await asyncio.sleep(0)
        raise BedrockSonicError('stream reset')


def test_failed_sender_error_is_retrieved(coordinator):
    stream = FailingSendStream()
    unhandled = []

    async def run():
        asyncio.get_running_loop().set_exception_handler(lambda loop, context: unhandled.append(context))
        try:
            await _pipeline(coordinator, stream).speak(SESSION, b'\x00' * 64)
        except VoiceSessionFailure:
            pass
        else:
            pytest.fail('expected VoiceSessionFailure')
        gc.collect()
        await asyncio.sleep(0)

    asyncio.run(run())
    assert unhandled == []
    assert stream.closed
