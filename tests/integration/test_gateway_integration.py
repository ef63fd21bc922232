"""Integration tests for the complete gateway HTTP flow.

These tests make *real* API calls and require valid API keys in the environment.
All tests are marked ``integration`` and are excluded from the default ``pytest``
run.  Run them explicitly when you have keys available:

    # Run only integration tests
    pytest -m integration -v

    # Run with a specific provider key only
    CLAUDE_API_KEY=sk-ant-... pytest -m integration -v
"""

# Load .env before any app imports so keys are visible to client configs.
from pathlib import Path

from dotenv import load_dotenv

load_dotenv(Path(__file__).parent.parent.parent / ".env", override=True)

import json  # noqa: E402
import os  # noqa: E402
from collections.abc import AsyncGenerator  # noqa: E402

import pytest  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402

from llmbridge.config import parse_gateway_config  # noqa: E402
from llmbridge.main import app  # noqa: E402

# ---------------------------------------------------------------------------
# Module-level integration marker, applied to every test in this file
# ---------------------------------------------------------------------------
pytestmark = pytest.mark.integration

# ---------------------------------------------------------------------------
# Skip conditions evaluated at collection time
# ---------------------------------------------------------------------------
_CLAUDE_KEY = os.environ.get("CLAUDE_API_KEY") or os.environ.get("ANTHROPIC_API_KEY")
_OPENAI_KEY = os.environ.get("OPENAI_API_KEY")

needs_claude = pytest.mark.skipif(
    not _CLAUDE_KEY,
    reason="CLAUDE_API_KEY not set, skipping Claude integration test",
)
needs_openai = pytest.mark.skipif(
    not _OPENAI_KEY,
    reason="OPENAI_API_KEY not set, skipping OpenAI integration test",
)

_CLAUDE_MODEL = "claude:claude-3-haiku-20240307"
_OPENAI_MODEL = "openai:gpt-4o-mini"
_SHORT_PROMPT = [{"role": "user", "content": "Reply with exactly one word: hello"}]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def gateway_config():
    clients = []
    if _OPENAI_KEY:
        clients.append({"type": "openai", "api_key": _OPENAI_KEY})
    if _CLAUDE_KEY:
        clients.append({"type": "claude", "api_key": _CLAUDE_KEY})
    app.state.gateway_config = parse_gateway_config({"clients": clients})
    yield
    del app.state.gateway_config


@pytest.fixture
async def client() -> AsyncGenerator[AsyncClient, None]:
    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test", timeout=60.0
    ) as ac:
        yield ac


def _content_from_stream(text: str) -> str:
    content = ""
    for frame in text.split("\n\n"):
        data = frame.removeprefix("data: ")
        if not data or data == "[DONE]":
            continue
        delta = json.loads(data)["choices"][0]["delta"]
        content += delta.get("content") or ""
    return content


# ---------------------------------------------------------------------------
# Claude
# ---------------------------------------------------------------------------


@needs_claude
class TestClaude:
    async def test_non_streaming(self, client: AsyncClient) -> None:
        response = await client.post(
            "/v1/chat/completions",
            json={"model": _CLAUDE_MODEL, "messages": _SHORT_PROMPT, "max_tokens": 10},
        )
        assert response.status_code == 200, response.text
        body = response.json()
        assert body["model"] == _CLAUDE_MODEL
        assert "hello" in body["choices"][0]["message"]["content"].lower()
        assert body["usage"]["prompt_tokens"] > 0
        assert body["usage"]["completion_tokens"] > 0

    async def test_streaming(self, client: AsyncClient) -> None:
        response = await client.post(
            "/v1/chat/completions",
            json={"model": _CLAUDE_MODEL, "messages": _SHORT_PROMPT, "stream": True},
        )
        assert response.status_code == 200
        assert response.text.rstrip().endswith("data: [DONE]")
        assert "hello" in _content_from_stream(response.text).lower()

    async def test_out_of_range_temperature(self, client: AsyncClient) -> None:
        response = await client.post(
            "/v1/chat/completions",
            json={"model": _CLAUDE_MODEL, "messages": _SHORT_PROMPT, "temperature": 1.5},
        )
        assert response.status_code == 400


# ---------------------------------------------------------------------------
# OpenAI
# ---------------------------------------------------------------------------


@needs_openai
class TestOpenAI:
    async def test_non_streaming(self, client: AsyncClient) -> None:
        response = await client.post(
            "/v1/chat/completions",
            json={"model": _OPENAI_MODEL, "messages": _SHORT_PROMPT, "max_tokens": 10},
        )
        assert response.status_code == 200, response.text
        body = response.json()
        assert body["id"].startswith("chatcmpl-")
        assert "hello" in body["choices"][0]["message"]["content"].lower()

    async def test_streaming(self, client: AsyncClient) -> None:
        response = await client.post(
            "/v1/chat/completions",
            json={"model": _OPENAI_MODEL, "messages": _SHORT_PROMPT, "stream": True},
        )
        assert response.status_code == 200
        assert "hello" in _content_from_stream(response.text).lower()


@needs_openai
async def test_invalid_key_maps_to_401(client: AsyncClient) -> None:
    app.state.gateway_config = parse_gateway_config(
        {"clients": [{"type": "openai", "api_key": "sk-invalid"}]}
    )
    response = await client.post(
        "/v1/chat/completions",
        json={"model": _OPENAI_MODEL, "messages": _SHORT_PROMPT, "stream": True},
    )
    assert response.status_code == 401
    assert response.json()["error"]["type"] == "invalid_request_error"
