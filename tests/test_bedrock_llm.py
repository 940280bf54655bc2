import asyncio
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError

from wellcoach.models.core import ImageAttachment, Role, Turn
from wellcoach.services.fallback import is_quota_error
from wellcoach.utils.bedrock_llm import BedrockLLM, BedrockLLMError, build_messages, is_retryable, iterate_in_thread
from wellcoach.utils.config import BedrockLLMConfig

CONFIG = BedrockLLMConfig(region='us-east-1',
                          model_id='test-model',
                          max_tokens=100,
                          temperature=0.4,
                          top_p=0.9,
                          retry_attempts=3,
                          retry_delay=0.0,
                          timeout_seconds=5)
MESSAGES = [{'role': 'user', 'content': [{'text': 'Hi'}]}]


def _client_error(code, message='failed'):
    return ClientError({'Error': {'Code': code, 'Message': message}}, 'Converse')


def _reply(text, stop_reason='end_turn', content=None):
    return {
        'output': {
            'message': {
                'role': 'assistant',
                'content': content if content is not None else [{'text': text}]
            }
        },
        'stopReason': stop_reason,
        'usage': {
            'inputTokens': 5,
            'outputTokens': 2
        }
    }


@pytest.fixture
def client():
    return MagicMock()


def test_generate_response_builds_converse_request(client):
    client.converse.return_value = _reply('Hello')
    llm = BedrockLLM(CONFIG, client=client)

    text, metrics = llm.generate_response(MESSAGES, 'Be brief.', temperature=0.1, stop_sequences=['END'])

    assert text == 'Hello'
    assert metrics == {'inputTokens': 5, 'outputTokens': 2}
    request = client.converse.call_args.kwargs
    assert request['modelId'] == 'test-model'
    assert request['system'] == [{'text': 'Be brief.'}]
    assert request['inferenceConfig'] == {'maxTokens': 100, 'temperature': 0.1, 'topP': 0.9, 'stopSequences': ['END']}


def test_throttling_is_retried(client):
    client.converse.side_effect = [_client_error('ThrottlingException'), _reply('OK')]
    assert BedrockLLM(CONFIG, client=client).generate_response(MESSAGES, 'sys')[0] == 'OK'
    assert client.converse.call_count == 2


def test_validation_error_is_not_retried(client):
    client.converse.side_effect = _client_error('ValidationException', 'bad input')
    with pytest.raises(BedrockLLMError) as excinfo:
        BedrockLLM(CONFIG, client=client).generate_response(MESSAGES, 'sys')
    assert client.converse.call_count == 1
    assert not is_quota_error(excinfo.value)


def test_exhausted_throttling_reads_as_quota_error(client):
    client.converse.side_effect = _client_error('ThrottlingException', 'Too many tokens')
    with pytest.raises(BedrockLLMError) as excinfo:
        BedrockLLM(CONFIG, client=client).generate_response(MESSAGES, 'sys')
    assert client.converse.call_count == 3
    assert 'after 3 attempts' in str(excinfo.value)
    assert is_quota_error(excinfo.value)


def test_empty_response_is_an_error(client):
    client.converse.return_value = _reply('', content=[])
    with pytest.raises(BedrockLLMError):
        BedrockLLM(CONFIG, client=client).generate_response(MESSAGES, 'sys')


def test_is_retryable():
    assert is_retryable(EndpointConnectionError(endpoint_url='https://bedrock'))
    assert is_retryable(_client_error('ServiceUnavailableException'))
    assert not is_retryable(_client_error('AccessDeniedException'))
    assert not is_retryable(ValueError('nope'))


def test_stream_response_yields_text_deltas(client):
    client.converse_stream.return_value = {
        'stream': [
            {'messageStart': {'role': 'assistant'}},
            {'contentBlockDelta': {'delta': {'text': 'Hel'}}},
            {'contentBlockDelta': {'delta': {'text': 'lo'}}},
            {'messageStop': {'stopReason': 'end_turn'}},
            {'metadata': {'usage': {'outputTokens': 2}}},
        ]
    }
    assert list(BedrockLLM(CONFIG, client=client).stream_response(MESSAGES, 'sys')) == ['Hel', 'lo']


def test_stream_error_event_raises(client):
    client.converse_stream.return_value = {
        'stream': [
            {'contentBlockDelta': {'delta': {'text': 'Hel'}}},
            {'throttlingException': {'message': 'Too many tokens'}},
        ]
    }
    stream = BedrockLLM(CONFIG, client=client).stream_response(MESSAGES, 'sys')
    assert next(stream) == 'Hel'
    with pytest.raises(BedrockLLMError) as excinfo:
        next(stream)
    assert is_quota_error(excinfo.value)


def test_generate_with_tools_runs_requested_tool(client):
    tool_use = {'toolUse': {'toolUseId': 'tool-1', 'name': 'get_health_data', 'input': {}}}
    client.converse.side_effect = [_reply('', 'tool_use', [tool_use]), _reply('Plan ready')]
    calls = []

    def executor(name, tool_input):
        calls.append(name)
        return {'steps': 4200}

    text = BedrockLLM(CONFIG, client=client).generate_with_tools(MESSAGES, 'sys', [{'toolSpec': {}}], executor)

    assert text == 'Plan ready'
    assert calls == ['get_health_data']
    request = client.converse.call_args.kwargs
    assert request['toolConfig'] == {'tools': [{'toolSpec': {}}]}
    assert request['messages'][-1]['content'] == [{
        'toolResult': {'toolUseId': 'tool-1', 'content': [{'json': {'steps': 4200}}]}
    }]
    assert MESSAGES == [{'role': 'user', 'content': [{'text': 'Hi'}]}]


def test_failing_tool_is_reported_to_model(client):
    tool_use = {'toolUse': {'toolUseId': 'tool-1', 'name': 'broken', 'input': {}}}
    client.converse.side_effect = [_reply('', 'tool_use', [tool_use]), _reply('Done anyway')]

    def executor(name, tool_input):
        raise RuntimeError('boom')

    assert BedrockLLM(CONFIG, client=client).generate_with_tools(MESSAGES, 'sys', [], executor) == 'Done anyway'
    result = client.converse.call_args.kwargs['messages'][-1]['content'][0]['toolResult']
    assert result['status'] == 'error'
    assert result['content'] == [{'text': 'Error: boom'}]


def test_tool_rounds_are_bounded(client):
    tool_use = {'toolUse': {'toolUseId': 'tool-1', 'name': 'get_health_data', 'input': {}}}
    client.converse.return_value = _reply('thinking', 'tool_use', [{'text': 'thinking'}, tool_use])

    text = BedrockLLM(CONFIG, client=client).generate_with_tools(MESSAGES, 'sys', [], lambda name, args: {},
                                                                 max_rounds=2)
    assert text == 'thinking'
    assert client.converse.call_count == 3


def test_build_messages_alternates_roles():
    history = [
        Turn(role=Role.ASSISTANT, content='Welcome!'),
        Turn(role=Role.USER, content='hi'),
        Turn(role=Role.USER, content='are you there?'),
        Turn(role=Role.ASSISTANT, content='Yes.'),
        Turn(role=Role.USER, content='plan please'),
    ]
    image = ImageAttachment(data=b'img', format='png')
    messages = build_messages(history, 'PROMPT', image)

    assert [message['role'] for message in messages] == ['user', 'assistant', 'user']
    assert messages[0]['content'] == [{'text': 'hi'}, {'text': 'are you there?'}]
    assert messages[-1]['content'] == [
        {'text': 'plan please'},
        {'image': {'format': 'png', 'source': {'bytes': b'img'}}},
        {'text': 'PROMPT'},
    ]


def test_iterate_in_thread_preserves_order():

    async def collect():
        return [item async for item in iterate_in_thread(iter(['a', 'b', 'c']))]

    assert asyncio.run(collect()) == ['a', 'b', 'c']
