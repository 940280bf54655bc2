"""
Amazon Bedrock bidirectional audio stream adapter (speech-to-speech model).
"""

import json
from typing import Any, Dict, Optional, Protocol

from .config import BedrockSonicConfig
from .logging_config import get_logger

logger = get_logger(__name__)


class BedrockSonicError(Exception):
    """Custom exception for Bedrock bidirectional stream errors."""
    pass


class BidirectionalStream(Protocol):
    """Ordered duplex event stream: JSON events in, raw event frames out."""

    async def send(self, event: Dict[str, Any]) -> None:
        ...

    async def receive(self) -> Optional[bytes]:
        """Next output frame in arrival order, or None once the stream has ended."""
        ...

    async def close(self) -> None:
        ...


class BedrockSonicStream:
    """BidirectionalStream over InvokeModelWithBidirectionalStream.

    boto3 does not expose the bidirectional operation, so this adapter uses the
    Smithy-based aws-sdk-bedrock-runtime client, installed with the ``voice``
    extra and imported on open().
    """

    def __init__(self, config: BedrockSonicConfig):
        self.config = config
        self._stream = None
        self._output = None

    async def open(self) -> 'BedrockSonicStream':
        """
        Open the bidirectional stream.

        Returns:
            self, ready for send/receive

        Raises:
            BedrockSonicError: If the SDK is missing or the stream cannot be opened
        """
        try:
            from aws_sdk_bedrock_runtime.client import (BedrockRuntimeClient,
                                                        InvokeModelWithBidirectionalStreamOperationInput)
            from aws_sdk_bedrock_runtime.config import Config, HTTPAuthSchemeResolver, SigV4AuthScheme
            from smithy_aws_core.credentials_resolvers.environment import EnvironmentCredentialsResolver
        except ImportError as e:
            raise BedrockSonicError('aws-sdk-bedrock-runtime is not installed; install the "voice" extra') from e

        client_config = Config(endpoint_uri=f'https://bedrock-runtime.{self.config.region}.amazonaws.com',
                               region=self.config.region,
                               aws_credentials_identity_resolver=EnvironmentCredentialsResolver(),
                               http_auth_scheme_resolver=HTTPAuthSchemeResolver(),
                               http_auth_schemes={'aws.auth.sigv4': SigV4AuthScheme()})
        client = BedrockRuntimeClient(config=client_config)
        try:
            self._stream = await client.invoke_model_with_bidirectional_stream(
                InvokeModelWithBidirectionalStreamOperationInput(model_id=self.config.model_id))
        except Exception as e:
            raise BedrockSonicError(f'Failed to open bidirectional stream ({self.config.model_id}): {e}') from e

        logger.info(f'Bidirectional stream opened ({self.config.model_id}, {self.config.region})')
        return self

    async def send(self, event: Dict[str, Any]) -> None:
        from aws_sdk_bedrock_runtime.models import (BidirectionalInputPayloadPart,
                                                    InvokeModelWithBidirectionalStreamInputChunk)

        if self._stream is None:
            raise BedrockSonicError('Stream is not open')
        payload = json.dumps(event).encode('utf-8')
        chunk = InvokeModelWithBidirectionalStreamInputChunk(value=BidirectionalInputPayloadPart(bytes_=payload))
        try:
            await self._stream.input_stream.send(chunk)
        except Exception as e:
            raise BedrockSonicError(f'Failed to send event: {e}') from e

    async def receive(self) -> Optional[bytes]:
        if self._stream is None:
            raise BedrockSonicError('Stream is not open')
        try:
            if self._output is None:
                _, self._output = await self._stream.await_output()
            result = await self._output.receive()
        except StopAsyncIteration:
            return None
        except Exception as e:
            raise BedrockSonicError(f'Bidirectional stream failed: {e}') from e

        if result is None:
            return None
        value = getattr(result, 'value', None)
        return getattr(value, 'bytes_', None) or b''

    async def close(self) -> None:
        if self._stream is None:
            return
        try:
            await self._stream.input_stream.close()
        except Exception as e:
            logger.warning(f'Error closing bidirectional stream: {e}')
        finally:
            self._stream = None
            self._output = None
