"""AWS Bedrock runtime (Anthropic Claude, Meta Llama and Mistral models).

Requests are SigV4-signed with botocore and sent through httpx.  Streaming
uses ``invoke-with-response-stream``, whose body is the AWS binary event
stream; each ``chunk`` event carries a base64-encoded model-native JSON
chunk.
"""

import base64
import json
import os
from typing import Any
from urllib.parse import quote

import httpx
from botocore.auth import SigV4Auth
from botocore.awsrequest import AWSRequest
from botocore.credentials import Credentials

from llmbridge.providers.base import Client
from llmbridge.providers.claude import claude_build_body, claude_handle_event, claude_parse_response
from llmbridge.providers.config import BedrockConfig, ModelConfig
from llmbridge.providers.errors import InvalidRequestError, ProtocolError, ProviderError
from llmbridge.providers.models import CompletionDetails, SendData
from llmbridge.providers.prompt_format import format_for_model, generate_prompt
from llmbridge.providers.sse import SseHandler, iter_event_stream

BEDROCK_ANTHROPIC_VERSION = "bedrock-2023-05-31"


def model_family(model_id: str) -> str:
    """Return ``anthropic``, ``meta`` or ``mistral`` for a Bedrock model id."""
    for family in ("anthropic", "meta", "mistral"):
        if model_id.startswith(f"{family}."):
            return family
    raise InvalidRequestError(f"Unsupported Bedrock model '{model_id}'")


class BedrockClient(Client):
    kind = "bedrock"
    config_class = BedrockConfig
    required_fields = ("access_key_id", "secret_access_key", "region")
    temperature_range = (0.0, 1.0)
    default_models = (
        ModelConfig(name="anthropic.claude-3-sonnet-20240229-v1:0", max_input_tokens=200000, max_output_tokens=4096),
        ModelConfig(name="anthropic.claude-3-haiku-20240307-v1:0", max_input_tokens=200000, max_output_tokens=4096),
        ModelConfig(name="meta.llama3-70b-instruct-v1:0", max_input_tokens=8192, max_output_tokens=2048),
        ModelConfig(name="meta.llama3-8b-instruct-v1:0", max_input_tokens=8192, max_output_tokens=2048),
        ModelConfig(name="mistral.mistral-large-2402-v1:0", max_input_tokens=32000, max_output_tokens=8192),
        ModelConfig(name="mistral.mixtral-8x7b-instruct-v0:1", max_input_tokens=32000, max_output_tokens=8192),
    )

    def validate(self, data: SendData) -> None:
        super().validate(data)
        model_family(self._model.name)

    def build_body(self, data: SendData) -> dict[str, Any]:
        family = model_family(self._model.name)
        if family == "anthropic":
            body = claude_build_body(self._model, data)
            body["anthropic_version"] = BEDROCK_ANTHROPIC_VERSION
            return self.with_extra_fields(body)

        body = {"prompt": generate_prompt(data.messages, format_for_model(self._model.name))}
        if self._model.max_output_tokens is not None:
            body["max_gen_len" if family == "meta" else "max_tokens"] = self._model.max_output_tokens
        if data.temperature is not None:
            body["temperature"] = data.temperature
        if data.top_p is not None:
            body["top_p"] = data.top_p
        return self.with_extra_fields(body)

    async def build_request(
        self, http_client: httpx.AsyncClient, data: SendData, stream: bool
    ) -> httpx.Request:
        region = self.config.get("region")
        action = "invoke-with-response-stream" if stream else "invoke"
        url = (
            f"https://bedrock-runtime.{region}.amazonaws.com/model/"
            f"{quote(self._model.name, safe='')}/{action}"
        )
        content = json.dumps(self.build_body(data)).encode()
        headers = {
            "content-type": "application/json",
            "accept": "application/vnd.amazon.eventstream" if stream else "application/json",
        }
        aws_request = AWSRequest(method="POST", url=url, data=content, headers=headers)
        SigV4Auth(self._credentials(), "bedrock", region).add_auth(aws_request)
        return http_client.build_request(
            "POST", url, headers=dict(aws_request.headers.items()), content=content
        )

    def _credentials(self) -> Credentials:
        return Credentials(
            self.config.get("access_key_id"),
            self.config.get("secret_access_key"),
            self.config.get("session_token") or os.environ.get("AWS_SESSION_TOKEN"),
        )

    def parse_response(self, response: httpx.Response) -> tuple[str, CompletionDetails]:
        data = self.json_body(response)
        family = model_family(self._model.name)
        if family == "anthropic":
            return claude_parse_response(data)
        if family == "meta":
            return data.get("generation") or "", CompletionDetails(
                input_tokens=data.get("prompt_token_count"),
                output_tokens=data.get("generation_token_count"),
            )
        outputs = data.get("outputs") or []
        input_tokens = response.headers.get("x-amzn-bedrock-input-token-count")
        output_tokens = response.headers.get("x-amzn-bedrock-output-token-count")
        return "".join(o.get("text", "") for o in outputs), CompletionDetails(
            input_tokens=int(input_tokens) if input_tokens else None,
            output_tokens=int(output_tokens) if output_tokens else None,
        )

    async def parse_stream(self, response: httpx.Response, handler: SseHandler) -> None:
        family = model_family(self._model.name)
        async for headers, payload in iter_event_stream(response, handler.abort):
            message_type = headers.get(":message-type")
            if message_type == "exception":
                raise ProviderError(
                    self._event_error(headers, payload), provider=self.name
                )
            if message_type != "event" or headers.get(":event-type") != "chunk":
                continue
            chunk = self._decode_chunk(payload)
            if family == "anthropic":
                if claude_handle_event(chunk, handler, self.name):
                    return
                continue
            if family == "meta":
                handler.text(chunk.get("generation") or "")
            else:
                for output in chunk.get("outputs") or []:
                    handler.text(output.get("text") or "")
            metrics = chunk.get("amazon-bedrock-invocationMetrics")
            if metrics:
                handler.details.input_tokens = metrics.get("inputTokenCount")
                handler.details.output_tokens = metrics.get("outputTokenCount")

    def _decode_chunk(self, payload: bytes) -> dict[str, Any]:
        try:
            envelope = json.loads(payload)
            return json.loads(base64.b64decode(envelope["bytes"]))
        except (ValueError, KeyError, TypeError) as exc:
            raise ProtocolError(
                f"Invalid Bedrock stream chunk: {payload[:200]!r}", provider=self.name
            ) from exc

    def _event_error(self, headers: dict[str, Any], payload: bytes) -> str:
        exception_type = headers.get(":exception-type", "exception")
        try:
            message = json.loads(payload).get("message")
        except ValueError:
            message = payload.decode(errors="replace")
        return f"{exception_type}: {message}"

    def extract_error(self, data: Any) -> str | None:
        if isinstance(data, dict) and isinstance(data.get("Message"), str):
            return data["Message"]
        return super().extract_error(data)
