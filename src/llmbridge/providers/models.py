"""Canonical request, model and event types shared by every provider client.

These types form the vendor-neutral contract between the gateway and the
provider clients.  Request-side values are immutable (``frozen=True``) and
validated at construction time so callers get a fast, explicit error rather
than a cryptic downstream failure.
"""

from dataclasses import dataclass, field
from typing import Any, Literal

from llmbridge.providers.errors import InvalidRequestError

_VALID_ROLES: frozenset[str] = frozenset({"system", "user", "assistant"})


@dataclass(frozen=True)
class Message:
    """One conversation turn.

    Args:
        role: One of ``system``, ``user`` or ``assistant``.
        content: Plain text, or a list of content parts such as
            ``{"type": "text", "text": "..."}``.  Only text parts are sent
            upstream; other part types are reserved for media support.

    Raises:
        InvalidRequestError: If the role or content shape is invalid.
    """

    role: str
    content: str | list[dict[str, Any]]

    def __post_init__(self) -> None:
        if self.role not in _VALID_ROLES:
            raise InvalidRequestError(
                f"invalid message role '{self.role}'; must be one of {sorted(_VALID_ROLES)}"
            )
        if isinstance(self.content, list):
            # Copy the parts; the caller's list must not alias ours.
            object.__setattr__(self, "content", [dict(part) for part in self.content])
        elif not isinstance(self.content, str):
            raise InvalidRequestError("message content must be a string or a list of parts")

    def text(self) -> str:
        """Return the message text, joining text parts with blank lines."""
        if isinstance(self.content, str):
            return self.content
        return "\n\n".join(
            part.get("text", "") for part in self.content if part.get("type") == "text"
        )

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role, "content": self.text()}


@dataclass(frozen=True)
class SendData:
    """One canonical completion request.

    Sampling parameters are passed through as given; each provider client
    checks them against its own vendor limits.
    """

    messages: tuple[Message, ...]
    temperature: float | None = None
    top_p: float | None = None
    stream: bool = False

    def __post_init__(self) -> None:
        if not self.messages:
            raise InvalidRequestError("messages must not be empty")
        object.__setattr__(self, "messages", tuple(self.messages))

    def split_system(self) -> tuple[str | None, list[Message]]:
        """Separate system turns from the conversation.

        Returns the system prompts joined with blank lines (``None`` when
        there are none) and the remaining messages in request order.
        """
        system = [m.text() for m in self.messages if m.role == "system"]
        rest = [m for m in self.messages if m.role != "system"]
        return ("\n\n".join(system) if system else None), rest


@dataclass
class Model:
    """A callable (client, model) pair and its runtime limits.

    A client always holds its own copy, so :meth:`set_max_output_tokens` only
    affects the request that owns that client.
    """

    client_name: str
    name: str
    max_input_tokens: int | None = None
    max_output_tokens: int | None = None
    extra_fields: dict[str, Any] = field(default_factory=dict)

    @property
    def id(self) -> str:
        return f"{self.client_name}:{self.name}"

    def set_max_output_tokens(self, max_output_tokens: int | None) -> None:
        if max_output_tokens is not None and max_output_tokens <= 0:
            raise InvalidRequestError(
                f"max_tokens must be a positive integer, got {max_output_tokens}"
            )
        self.max_output_tokens = max_output_tokens


@dataclass
class CompletionDetails:
    """Metadata of a finished completion.

    Attributes:
        id: Upstream completion id, when the vendor reports one.
        input_tokens: Prompt token count reported by the vendor.
        output_tokens: Generated token count reported by the vendor.
    """

    id: str | None = None
    input_tokens: int | None = None
    output_tokens: int | None = None

    @property
    def total_tokens(self) -> int:
        return (self.input_tokens or 0) + (self.output_tokens or 0)


@dataclass(frozen=True)
class SseEvent:
    """One normalized streaming unit: a text delta or the terminal ``done``."""

    kind: Literal["text", "done"]
    text: str = ""

    @classmethod
    def text_event(cls, text: str) -> "SseEvent":
        return cls(kind="text", text=text)

    @classmethod
    def done_event(cls) -> "SseEvent":
        return cls(kind="done")

    @property
    def is_done(self) -> bool:
        return self.kind == "done"
