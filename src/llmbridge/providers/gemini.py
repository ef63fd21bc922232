"""Google Gemini (AI Studio) and Vertex AI.

Both use the ``generateContent`` schema; streaming goes through
``streamGenerateContent?alt=sse`` and ends when the body closes.
"""

import asyncio
from typing import Any

import google.auth
import httpx
from google.auth.exceptions import GoogleAuthError
from google.auth.transport.requests import Request

from llmbridge.providers.base import Client
from llmbridge.providers.config import GeminiConfig, ModelConfig, VertexAIConfig
from llmbridge.providers.errors import AuthError, InvalidRequestError
from llmbridge.providers.models import CompletionDetails, Model, SendData
from llmbridge.providers.sse import SseHandler, iter_sse_messages

GEMINI_API_BASE = "https://generativelanguage.googleapis.com/v1beta"
VERTEXAI_SCOPES = ["https://www.googleapis.com/auth/cloud-platform"]

_SAFETY_CATEGORIES = (
    "HARM_CATEGORY_HARASSMENT",
    "HARM_CATEGORY_HATE_SPEECH",
    "HARM_CATEGORY_SEXUALLY_EXPLICIT",
    "HARM_CATEGORY_DANGEROUS_CONTENT",
)


def gemini_build_body(model: Model, data: SendData, block_threshold: str | None) -> dict[str, Any]:
    system, messages = data.split_system()
    body: dict[str, Any] = {
        "contents": [
            {
                "role": "model" if m.role == "assistant" else "user",
                "parts": [{"text": m.text()}],
            }
            for m in messages
        ],
    }
    if system:
        body["systemInstruction"] = {"parts": [{"text": system}]}
    if block_threshold:
        body["safetySettings"] = [
            {"category": category, "threshold": block_threshold}
            for category in _SAFETY_CATEGORIES
        ]

    generation_config: dict[str, Any] = {}
    if model.max_output_tokens is not None:
        generation_config["maxOutputTokens"] = model.max_output_tokens
    if data.temperature is not None:
        generation_config["temperature"] = data.temperature
    if data.top_p is not None:
        generation_config["topP"] = data.top_p
    if generation_config:
        body["generationConfig"] = generation_config
    return body


def gemini_extract_text(chunk: dict[str, Any], provider: str, final: bool) -> str:
    """Return the candidate text of one response or stream chunk.

    A response without candidates means the prompt was blocked; a final
    response whose candidate carries no parts was stopped by a safety
    filter.  Both raise instead of passing off an empty answer.
    """
    candidates = chunk.get("candidates")
    if not candidates:
        feedback = chunk.get("promptFeedback") or {}
        if feedback.get("blockReason"):
            raise InvalidRequestError(
                f"Blocked due to {feedback['blockReason']}", provider=provider
            )
        if final:
            raise InvalidRequestError("Response contained no candidates", provider=provider)
        return ""
    candidate = candidates[0]
    parts = (candidate.get("content") or {}).get("parts") or []
    if not parts and candidate.get("finishReason") == "SAFETY":
        raise InvalidRequestError("Blocked due to safety settings", provider=provider)
    return "".join(part.get("text", "") for part in parts)


def gemini_usage(chunk: dict[str, Any]) -> tuple[int | None, int | None]:
    usage = chunk.get("usageMetadata") or {}
    return usage.get("promptTokenCount"), usage.get("candidatesTokenCount")


class GeminiClient(Client):
    kind = "gemini"
    config_class = GeminiConfig
    required_fields = ("api_key",)
    default_models = (
        ModelConfig(name="gemini-1.0-pro-latest", max_input_tokens=30720, max_output_tokens=2048),
        ModelConfig(name="gemini-1.5-flash-latest", max_input_tokens=1048576, max_output_tokens=8192),
        ModelConfig(name="gemini-1.5-pro-latest", max_input_tokens=1048576, max_output_tokens=8192),
    )

    def model_url(self, stream: bool) -> str:
        api_base = (self.config.get("api_base") or GEMINI_API_BASE).rstrip("/")
        method = "streamGenerateContent" if stream else "generateContent"
        return f"{api_base}/models/{self._model.name}:{method}"

    async def auth(self) -> tuple[dict[str, str], dict[str, str]]:
        """Return ``(headers, query params)`` carrying the credentials."""
        return {}, {"key": self.config.get("api_key") or ""}

    async def build_request(
        self, http_client: httpx.AsyncClient, data: SendData, stream: bool
    ) -> httpx.Request:
        headers, params = await self.auth()
        if stream:
            params["alt"] = "sse"
        body = gemini_build_body(self._model, data, self.config.get("block_threshold"))
        return http_client.build_request(
            "POST",
            self.model_url(stream),
            headers=headers,
            params=params,
            json=self.with_extra_fields(body),
        )

    def parse_response(self, response: httpx.Response) -> tuple[str, CompletionDetails]:
        data = self.json_body(response)
        text = gemini_extract_text(data, self.name, final=True)
        input_tokens, output_tokens = gemini_usage(data)
        return text, CompletionDetails(input_tokens=input_tokens, output_tokens=output_tokens)

    async def parse_stream(self, response: httpx.Response, handler: SseHandler) -> None:
        async for message in iter_sse_messages(response, handler.abort):
            chunk = message.json()
            handler.text(gemini_extract_text(chunk, self.name, final=False))
            input_tokens, output_tokens = gemini_usage(chunk)
            if input_tokens is not None:
                handler.details.input_tokens = input_tokens
            if output_tokens is not None:
                handler.details.output_tokens = output_tokens

    def extract_error(self, data: Any) -> str | None:
        # Errors arrive either as an object or wrapped in a one-element list.
        if isinstance(data, list) and data:
            data = data[0]
        return super().extract_error(data)


class VertexAIClient(GeminiClient):
    """Gemini models served from a Google Cloud project.

    Uses the configured ``access_token`` when present, otherwise mints one
    from application-default credentials (``adc_file`` or the environment's
    default chain) through google-auth.
    """

    kind = "vertexai"
    config_class = VertexAIConfig
    required_fields = ("project_id", "location")

    def model_url(self, stream: bool) -> str:
        location = self.config.get("location")
        method = "streamGenerateContent" if stream else "generateContent"
        return (
            f"https://{location}-aiplatform.googleapis.com/v1/projects/"
            f"{self.config.get('project_id')}/locations/{location}/publishers/google/models/"
            f"{self._model.name}:{method}"
        )

    async def auth(self) -> tuple[dict[str, str], dict[str, str]]:
        token = self.config.get("access_token") or await asyncio.to_thread(self._fetch_token)
        return {"Authorization": f"Bearer {token}"}, {}

    def _fetch_token(self) -> str:
        adc_file = self.config.get("adc_file")
        try:
            if adc_file:
                credentials, _ = google.auth.load_credentials_from_file(
                    adc_file, scopes=VERTEXAI_SCOPES
                )
            else:
                credentials, _ = google.auth.default(scopes=VERTEXAI_SCOPES)
            credentials.refresh(Request())
        except GoogleAuthError as exc:
            raise AuthError(
                f"Failed to obtain Vertex AI access token: {exc}",
                provider=self.name,
                original_error=exc,
            ) from exc
        return credentials.token
