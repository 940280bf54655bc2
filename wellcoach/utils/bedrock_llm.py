"""
Amazon Bedrock LLM client wrapper with retry logic and error handling.
"""

import asyncio
import time
from typing import Any, AsyncIterator, Callable, Dict, Iterator, List, Optional, Sequence, Tuple

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import (BotoCoreError, ClientError, ConnectionClosedError, ConnectTimeoutError,
                                 EndpointConnectionError, ReadTimeoutError)

from ..models.core import ImageAttachment, Role, Turn
from .config import BedrockLLMConfig
from .logging_config import get_logger

logger = get_logger(__name__)

RETRYABLE_ERROR_CODES = {
    'ThrottlingException',
    'TooManyRequestsException',
    'ServiceUnavailableException',
    'ModelTimeoutException',
    'InternalServerException',
    'ModelNotReadyException',
}

RETRYABLE_TRANSPORT_ERRORS = (ConnectionClosedError, EndpointConnectionError, ReadTimeoutError, ConnectTimeoutError)

ToolExecutor = Callable[[str, Dict[str, Any]], Dict[str, Any]]


class BedrockLLMError(Exception):
    """Custom exception for Bedrock LLM errors."""
    pass


def is_retryable(error: Exception) -> bool:
    """Return True for throttling, transient service and connection errors."""
    if isinstance(error, ClientError):
        return error.response.get('Error', {}).get('Code') in RETRYABLE_ERROR_CODES
    return isinstance(error, RETRYABLE_TRANSPORT_ERRORS)


def build_messages(history: Sequence[Turn], user_text: str, image: Optional[ImageAttachment] = None) -> List[Dict[str, Any]]:
    """Convert session history plus the current prompt into Converse messages.

    Converse requires the conversation to start with a user message and to
    alternate roles, so consecutive turns with the same role are merged.

    Args:
        history: Prior turns, oldest first
        user_text: Current user prompt
        image: Optional image attached to the current prompt

    Returns:
        List of message dictionaries in Bedrock format
    """
    messages: List[Dict[str, Any]] = []
    for turn in history:
        if not messages and turn.role != Role.USER:
            continue
        if messages and messages[-1]['role'] == turn.role.value:
            messages[-1]['content'].append({'text': turn.content})
        else:
            messages.append({'role': turn.role.value, 'content': [{'text': turn.content}]})

    content: List[Dict[str, Any]] = []
    if image is not None:
        content.append({'image': {'format': image.format, 'source': {'bytes': image.data}}})
    content.append({'text': user_text})

    if messages and messages[-1]['role'] == Role.USER.value:
        messages[-1]['content'].extend(content)
    else:
        messages.append({'role': Role.USER.value, 'content': content})
    return messages


def _message_text(message: Dict[str, Any]) -> str:
    return ' '.join(part['text'] for part in message.get('content', []) if 'text' in part).strip()


class BedrockLLM:
    """Amazon Bedrock LLM client with retry logic and error handling."""

    def __init__(self, config: BedrockLLMConfig, client: Optional[Any] = None):
        """
        Initialize Bedrock LLM client.

        Args:
            config: BedrockLLMConfig instance with connection parameters
            client: Optional pre-built bedrock-runtime client
        """
        self.config = config
        self.model_id = config.model_id

        # Create Bedrock runtime client with timeout configuration
        self.bedrock_runtime = client or boto3.client(
            'bedrock-runtime',
            region_name=config.region,
            config=BotoConfig(
                connect_timeout=5,
                read_timeout=config.timeout_seconds,
                retries={'max_attempts': 0}  # We handle retries manually
            ))

        logger.info(f'Initialized Bedrock LLM client with model: {self.model_id}')

    def _request(self,
                 messages: List[Dict[str, Any]],
                 system_prompt: str,
                 max_tokens: Optional[int],
                 temperature: Optional[float],
                 stop_sequences: Optional[List[str]]) -> Dict[str, Any]:
        inf_params = {
            'maxTokens': max_tokens or self.config.max_tokens,
            'temperature': self.config.temperature if temperature is None else temperature,
            'topP': self.config.top_p,
        }
        if stop_sequences:
            inf_params['stopSequences'] = stop_sequences
        return {
            'modelId': self.model_id,
            'messages': messages,
            'system': [{'text': system_prompt}],
            'inferenceConfig': inf_params,
        }

    def _with_retry(self, operation: str, call: Callable[[], Any]) -> Any:
        """Run call, retrying transient failures with linear backoff.

        Raises:
            BedrockLLMError: On a non-retryable failure or after the last attempt
        """
        for attempt in range(self.config.retry_attempts):
            try:
                logger.debug(f'Bedrock {operation} attempt {attempt + 1}/{self.config.retry_attempts}')
                return call()

            except (ClientError, BotoCoreError) as e:
                if not is_retryable(e):
                    logger.error(f'Bedrock {operation} failed: {e}')
                    raise BedrockLLMError(f'Bedrock {operation} failed ({self.model_id}): {e}') from e

                logger.warning(f'Bedrock {operation} attempt {attempt + 1}/{self.config.retry_attempts} failed: {e}')
                if attempt < self.config.retry_attempts - 1:
                    time.sleep(self.config.retry_delay * (attempt + 1))
                else:
                    raise BedrockLLMError(
                        f'Bedrock {operation} failed after {self.config.retry_attempts} attempts ({self.model_id}): {e}') from e

        raise BedrockLLMError(f'Bedrock {operation} failed after {self.config.retry_attempts} attempts')

    def generate_response(self,
                          messages: List[Dict[str, Any]],
                          system_prompt: str,
                          max_tokens: Optional[int] = None,
                          temperature: Optional[float] = None,
                          stop_sequences: Optional[List[str]] = None) -> Tuple[str, Optional[Dict[str, Any]]]:
        """
        Generate a single-shot response using the Converse API.

        Args:
            messages: List of message dictionaries in Bedrock format
            system_prompt: System prompt for the conversation
            max_tokens: Maximum tokens to generate (uses config default if None)
            temperature: Temperature for generation (uses config default if None)
            stop_sequences: Stop sequences for generation

        Returns:
            Tuple of (response_text, invoke_metrics)

        Raises:
            BedrockLLMError: If all retry attempts fail or the model returns no text
        """
        request = self._request(messages, system_prompt, max_tokens, temperature, stop_sequences)
        response = self._with_retry('converse', lambda: self.bedrock_runtime.converse(**request))

        text = _message_text(response.get('output', {}).get('message', {}))
        if not text:
            raise BedrockLLMError(f'Bedrock returned an empty response ({self.model_id})')

        invoke_metrics = {**response.get('usage', {}), **response.get('metrics', {})}
        logger.debug(f'Bedrock LLM response generated successfully (length: {len(text)})')
        return text, invoke_metrics

    def stream_response(self,
                        messages: List[Dict[str, Any]],
                        system_prompt: str,
                        max_tokens: Optional[int] = None,
                        temperature: Optional[float] = None) -> Iterator[str]:
        """
        Stream response text deltas using the ConverseStream API.

        Retries only cover opening the stream; a failure after the first delta
        is raised to the caller.

        Yields:
            Text deltas in arrival order

        Raises:
            BedrockLLMError: If the stream cannot be opened or breaks mid-flight
        """
        request = self._request(messages, system_prompt, max_tokens, temperature, None)
        response = self._with_retry('converse_stream', lambda: self.bedrock_runtime.converse_stream(**request))
        stream = response.get('stream')
        if stream is None:
            raise BedrockLLMError(f'Bedrock returned no stream ({self.model_id})')

        try:
            for event in stream:
                if 'contentBlockDelta' in event:
                    delta = event['contentBlockDelta']['delta'].get('text')
                    if delta:
                        yield delta
                elif 'metadata' in event:
                    logger.debug(f"Bedrock stream usage: {event['metadata'].get('usage')}")
                else:
                    for key in ('throttlingException', 'modelStreamErrorException', 'serviceUnavailableException',
                                'validationException', 'internalServerException'):
                        if key in event:
                            raise BedrockLLMError(f"Bedrock stream error {key}: {event[key].get('message', '')}")
        except (ClientError, BotoCoreError) as e:
            raise BedrockLLMError(f'Bedrock stream interrupted ({self.model_id}): {e}') from e
        finally:
            close = getattr(stream, 'close', None)
            if close is not None:
                close()

    def generate_with_tools(self,
                            messages: List[Dict[str, Any]],
                            system_prompt: str,
                            tools: List[Dict[str, Any]],
                            tool_executor: ToolExecutor,
                            max_tokens: Optional[int] = None,
                            temperature: Optional[float] = None,
                            max_rounds: int = 3) -> str:
        """
        Generate a response, executing tool calls the model requests.

        Each requested tool result is appended to the conversation before the
        next call, up to max_rounds tool rounds.

        Args:
            messages: Conversation in Bedrock format (copied, not mutated)
            system_prompt: System prompt for the conversation
            tools: Converse tool specifications
            tool_executor: Callable(name, input) returning a JSON-serializable dict

        Returns:
            Final response text (may be empty if the model never answered in text)
        """
        conversation = list(messages)
        request = self._request(conversation, system_prompt, max_tokens, temperature, None)
        request['toolConfig'] = {'tools': tools}

        text = ''
        for round_index in range(max_rounds + 1):
            request['messages'] = conversation
            response = self._with_retry('converse', lambda: self.bedrock_runtime.converse(**request))
            message = response.get('output', {}).get('message', {'role': 'assistant', 'content': []})
            text = _message_text(message) or text

            if response.get('stopReason') != 'tool_use' or round_index == max_rounds:
                break

            conversation.append(message)
            results = []
            for block in message.get('content', []):
                if 'toolUse' not in block:
                    continue
                tool_use = block['toolUse']
                logger.debug(f"Model requested tool {tool_use['name']}")
                try:
                    result = tool_executor(tool_use['name'], tool_use.get('input') or {})
                    results.append({'toolResult': {'toolUseId': tool_use['toolUseId'], 'content': [{'json': result}]}})
                except Exception as e:
                    logger.warning(f"Tool {tool_use['name']} failed: {e}")
                    results.append({
                        'toolResult': {
                            'toolUseId': tool_use['toolUseId'],
                            'content': [{'text': f'Error: {e}'}],
                            'status': 'error'
                        }
                    })
            conversation.append({'role': 'user', 'content': results})

        return text

    def health_check(self) -> bool:
        """
        Perform a health check on the Bedrock LLM service.

        Returns:
            True if service is healthy, False otherwise
        """
        try:
            test_messages = [{'role': 'user', 'content': [{'text': 'Hi'}]}]
            response, _ = self.generate_response(messages=test_messages,
                                                 system_prompt="You are a helpful assistant. Respond with just 'OK'.",
                                                 max_tokens=10,
                                                 temperature=0.0)
            return len(response.strip()) > 0

        except Exception as e:
            logger.error(f'Bedrock LLM health check failed: {e}')
            return False


async def iterate_in_thread(iterator: Iterator[str]) -> AsyncIterator[str]:
    """Drive a blocking iterator from a worker thread, one item at a time."""
    sentinel = object()
    try:
        while True:
            item = await asyncio.to_thread(next, iterator, sentinel)
            if item is sentinel:
                return
            yield item
    finally:
        close = getattr(iterator, 'close', None)
        if close is not None:
            try:
                close()
            except ValueError:
                # generator still running in the worker thread; it closes its stream when it finishes
                logger.debug('Stream iterator busy at close, leaving it to finish in its thread')
