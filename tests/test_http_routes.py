import base64
import json
import uuid

import pytest
from starlette.testclient import TestClient

from wellcoach.http_routes import HttpRoutes, RequestError, create_app, parse_turn_request
from wellcoach.services.coordinator import AgentCoordinator
from wellcoach.services.streaming import PUBLIC_ERROR_MESSAGE
from wellcoach.services.voice import VoicePipeline
from wellcoach.utils.bedrock_sonic import BedrockSonicError
from wellcoach.utils.config import RateLimitConfig

from .conftest import FakeLLM, hard_error
from .test_voice import REPLY_FRAMES, SONIC_CONFIG, FakeStream

SESSION = 'session-http-1'
RATE_LIMIT = RateLimitConfig(turn_requests=3, turn_window_seconds=60, voice_requests=3, voice_window_seconds=60)


@pytest.fixture
def client_for(memory, stabilizer_config):

    def build(llm=None, stream=None):
        coordinator = AgentCoordinator(llm or FakeLLM(), memory, stabilizer=stabilizer_config)

        async def factory():
            return stream or FakeStream(REPLY_FRAMES)

        voice = VoicePipeline(coordinator, stream_factory=factory, config=SONIC_CONFIG)
        return TestClient(create_app(HttpRoutes(coordinator, voice, RATE_LIMIT)))

    return build


def _sse_events(body: str):
    events = []
    for frame in body.strip().split('\n\n'):
        lines = dict(line.split(': ', 1) for line in frame.splitlines())
        events.append((lines['event'], json.loads(lines['data'])))
    return events


def test_parse_turn_request_accepts_aliases():
    image = base64.b64encode(b'\xff\xd8img').decode('ascii')
    turn = parse_turn_request({
        'sessionId': SESSION,
        'message': '',
        'imageBase64': image,
        'imageFormat': 'PNG',
        'streamingRequested': True,
        'feedback': '   ',
        'userContext': {'name': 'Anna', 'healthData': {'steps': 1200, 'sleep': 6, 'stress': 70}}
    })
    assert turn.image.data == b'\xff\xd8img'
    assert turn.image.format == 'png'
    assert turn.streaming
    assert turn.feedback is None
    assert turn.user_context.health_data.steps == 1200


def test_parse_turn_request_replaces_invalid_session_id():
    turn = parse_turn_request({'sessionId': 'bad id!', 'message': 'hi'})
    assert str(uuid.UUID(turn.session_id)) == turn.session_id


@pytest.mark.parametrize('payload', [[], {'message': '   '}, {'message': 42}, {'message': 'x', 'imageBase64': '@@@'},
                                     {'message': 'x', 'userContext': {'healthData': {'heartRate': 'fast'}}}])
def test_parse_turn_request_rejects_bad_bodies(payload):
    with pytest.raises(RequestError):
        parse_turn_request(payload)


def test_json_turn(client_for):
    with client_for() as client:
        response = client.post('/api/turn', json={'sessionId': SESSION, 'message': "I'm tired after work"})

    assert response.status_code == 200
    body = response.json()
    assert body['success'] is True
    assert body['session_id'] == SESSION
    assert body['route'] == 'full'
    assert body['memory_size'] == 2
    assert response.headers['X-RateLimit-Remaining'] == '2'


def test_turn_validation_errors(client_for):
    with client_for() as client:
        assert client.post('/api/turn', json={'sessionId': SESSION}).status_code == 400
        response = client.post('/api/turn', content=b'{oops', headers={'content-type': 'application/json'})
    assert response.status_code == 400
    assert response.json() == {'success': False, 'error': 'Invalid JSON body'}


def test_turn_accepts_stress_label_and_numeric_strings(client_for):
    health = {'steps': '4200', 'sleep': 5.4, 'stress': 'moderate', 'heartRate': '80', 'source': 'android-sensors'}
    with client_for() as client:
        response = client.post('/api/turn', json={'sessionId': SESSION, 'message': "I'm tired after work",
                                                  'userContext': {'healthData': health}})

    assert response.status_code == 200
    wearable = response.json()['wearable']
    assert wearable['steps'] == 4200
    assert wearable['stress_level'] == 'moderate'
    assert wearable['average_heart_rate'] == 80
    assert wearable['resting_heart_rate'] == 60


def test_turn_rejects_unknown_stress_value(client_for):
    with client_for() as client:
        response = client.post('/api/turn', json={'sessionId': SESSION, 'message': "I'm tired after work",
                                                  'userContext': {'healthData': {'stress': 'extreme'}}})

    assert response.status_code == 400
    assert response.json()['success'] is False
    assert 'userContext.healthData.stress' in response.json()['error']


def test_turn_rate_limit(client_for):
    with client_for() as client:
        statuses = [client.post('/api/turn', json={'sessionId': SESSION, 'message': 'ok thanks'}).status_code
                    for _ in range(4)]
        limited = client.post('/api/turn', json={'sessionId': SESSION, 'message': 'ok thanks'})

    assert statuses == [200, 200, 200, 429]
    assert limited.headers['X-RateLimit-Remaining'] == '0'
    assert 'X-RateLimit-Reset' in limited.headers


def test_streaming_turn(client_for):
    with client_for() as client:
        response = client.post('/api/turn', json={'sessionId': SESSION, 'message': "I'm tired after work",
                                                  'streaming': True})

    assert response.status_code == 200
    assert response.headers['content-type'].startswith('text/event-stream')
    events = _sse_events(response.text)
    assert events[0][0] == 'dispatcher'
    assert [name for name, _ in events[-2:]] == ['final', 'done']
    assert events[-2][1]['payload']['route'] == 'full'
    assert any(name == 'text_chunk' for name, _ in events)


def test_hard_failure_returns_generic_500(client_for):
    with client_for(FakeLLM(errors={'analyzer': hard_error()})) as client:
        response = client.post('/api/turn', json={'sessionId': SESSION, 'message': "I'm tired after work"})

    assert response.status_code == 500
    assert response.json()['error'] == PUBLIC_ERROR_MESSAGE
    assert 'abc123' not in response.text


def test_session_status(client_for):
    with client_for() as client:
        assert client.get('/api/session/short').status_code == 400
        response = client.get(f'/api/session/{SESSION}')

    assert response.status_code == 200
    assert response.json()['memory_size'] == 0
    assert response.json()['wearable']['source'] == 'mock'


def test_voice_turn(client_for):
    audio = base64.b64encode(b'\x00' * 4096).decode('ascii')
    with client_for() as client:
        response = client.post('/api/voice', json={'sessionId': SESSION, 'audioBase64': audio})

    assert response.status_code == 200
    body = response.json()
    assert body['transcript'] == 'I slept badly'
    assert base64.b64decode(body['audioBase64']) == b'\x01\x02\x03\x04'


def test_voice_turn_errors(client_for):
    too_large = base64.b64encode(b'\x00' * (2 * 1024 * 1024 + 1)).decode('ascii')
    with client_for() as client:
        assert client.post('/api/voice', json={'sessionId': SESSION}).status_code == 400
        assert client.post('/api/voice', json={'audioBase64': '***'}).status_code == 400
        assert client.post('/api/voice', json={'audioBase64': too_large}).status_code == 413


def test_voice_upstream_failure_is_502(client_for):
    audio = base64.b64encode(b'\x00' * 64).decode('ascii')
    with client_for(stream=FakeStream(receive_error=BedrockSonicError('reset'))) as client:
        response = client.post('/api/voice', json={'sessionId': SESSION, 'audioBase64': audio})
    assert response.status_code == 502


def test_voice_chat(client_for):
    with client_for() as client:
        missing = client.post('/api/voice-chat', json={'transcript': 'hello'})
        bad_context = client.post('/api/voice-chat', json={'sessionId': SESSION, 'transcript': 'hello',
                                                           'userContext': {'healthData': {'stress': 'extreme'}}})
        response = client.post('/api/voice-chat', json={'sessionId': SESSION, 'transcript': 'I am tired after work'})

    assert missing.status_code == 400
    assert bad_context.status_code == 400
    assert 'userContext.healthData.stress' in bad_context.json()['error']
    assert response.status_code == 200
    assert response.json()['reply'].startswith('Long day, huh?')


def test_health(client_for):
    with client_for() as client:
        response = client.get('/api/health')
    assert response.status_code == 200
    assert response.json()['health_status']['bedrock_llm']['healthy'] is True
    assert response.json()['active_sessions'] == 0
