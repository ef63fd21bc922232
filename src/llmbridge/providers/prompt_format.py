"""Chat templates for vendors that take a single prompt string.

Some hosted models (Llama and Mistral on Bedrock and Replicate) accept a raw
prompt instead of a message list, so the conversation has to be rendered
into the model family's own chat template.
"""

from dataclasses import dataclass

from llmbridge.providers.models import Message


@dataclass(frozen=True)
class PromptFormat:
    """Template pieces for one model family.

    Each turn is wrapped in its role's ``*_pre`` / ``*_post`` markers.
    """

    start: str
    system_pre: str
    system_post: str
    user_pre: str
    user_post: str
    assistant_pre: str
    assistant_post: str
    end: str


LLAMA2_PROMPT_FORMAT = PromptFormat(
    start="<s>",
    system_pre="[INST] <<SYS>>",
    system_post="<</SYS>> [/INST]",
    user_pre="[INST]",
    user_post="[/INST]",
    assistant_pre="",
    assistant_post="</s><s>",
    end="",
)

LLAMA3_PROMPT_FORMAT = PromptFormat(
    start="<|begin_of_text|>",
    system_pre="<|start_header_id|>system<|end_header_id|>\n\n",
    system_post="<|eot_id|>",
    user_pre="<|start_header_id|>user<|end_header_id|>\n\n",
    user_post="<|eot_id|>",
    assistant_pre="<|start_header_id|>assistant<|end_header_id|>\n\n",
    assistant_post="<|eot_id|>",
    end="<|start_header_id|>assistant<|end_header_id|>\n\n",
)

MISTRAL_PROMPT_FORMAT = PromptFormat(
    start="<s>",
    system_pre="[INST] ",
    system_post=" [/INST]",
    user_pre="[INST] ",
    user_post=" [/INST]",
    assistant_pre="",
    assistant_post="</s>",
    end="",
)


def generate_prompt(messages: list[Message] | tuple[Message, ...], fmt: PromptFormat) -> str:
    """Render *messages* into one prompt string using *fmt*."""
    parts = [fmt.start]
    for message in messages:
        text = message.text()
        if message.role == "system":
            parts.append(f"{fmt.system_pre}{text}{fmt.system_post}")
        elif message.role == "user":
            parts.append(f"{fmt.user_pre}{text}{fmt.user_post}")
        else:
            parts.append(f"{fmt.assistant_pre}{text}{fmt.assistant_post}")
    parts.append(fmt.end)
    return "".join(parts)


def format_for_model(model_name: str) -> PromptFormat:
    """Pick the template matching a model id, defaulting to Llama 3."""
    name = model_name.lower()
    if "llama-2" in name or "llama2" in name:
        return LLAMA2_PROMPT_FORMAT
    if "mistral" in name or "mixtral" in name:
        return MISTRAL_PROMPT_FORMAT
    return LLAMA3_PROMPT_FORMAT
