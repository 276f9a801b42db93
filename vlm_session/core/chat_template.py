"""Chat template formatting for single-turn prompt rendering.

Two kinds of templates are supported:

- Named legacy templates (``vicuna``, ``deepseek``, ``chatml``, ``gemma``)
  rendered from fixed role prefixes/suffixes. Templates whose format has no
  dedicated end-of-turn token declare an ``antiprompt`` string that the
  session watches for in the generated tokens.
- Jinja templates, taken from the model metadata, from a file, or given
  inline, rendered in a sandboxed Jinja2 environment. These rely on the
  model's end-of-generation token and declare no antiprompt.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from jinja2 import TemplateError
from jinja2.sandbox import ImmutableSandboxedEnvironment
from loguru import logger

USER_ROLE = "user"
ASSISTANT_ROLE = "assistant"
SYSTEM_ROLE = "system"


@dataclass(frozen=True)
class ChatMessage:
    """A role-tagged message; built per turn and never re-rendered."""

    role: str
    content: str

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


class ChatTemplate(ABC):
    """Renders role-tagged messages into the exact prompt string to tokenize."""

    name: str
    antiprompt: str | None = None

    @abstractmethod
    def render(self, messages: Sequence[ChatMessage], add_generation_prompt: bool = True) -> str:
        """Render ``messages`` and optionally open the assistant turn."""


@dataclass(frozen=True)
class RoleFormat:
    prefix: str
    suffix: str


@dataclass
class LegacyChatTemplate(ChatTemplate):
    """Template defined by a fixed prefix/suffix per role."""

    name: str
    roles: dict[str, RoleFormat]
    generation_prompt: str
    antiprompt: str | None = None

    def render(self, messages: Sequence[ChatMessage], add_generation_prompt: bool = True) -> str:
        parts: list[str] = []
        for message in messages:
            role_format = self.roles.get(message.role)
            if role_format is None:
                raise ValueError(f"Template '{self.name}' does not support role '{message.role}'")
            parts.append(f"{role_format.prefix}{message.content}{role_format.suffix}")
        if add_generation_prompt:
            parts.append(self.generation_prompt)
        return "".join(parts)


def _raise_template_exception(message: str) -> None:
    raise TemplateError(message)


@dataclass
class JinjaChatTemplate(ChatTemplate):
    """Template rendered from Jinja source (HF-style ``chat_template``).

    BOS is inserted by the tokenizer on the first turn, so a leading
    ``bos_token`` produced by the template is stripped from the output.
    """

    source: str
    bos_token: str = ""
    eos_token: str = ""
    name: str = "jinja"
    antiprompt: str | None = None
    _template: Any = field(init=False, repr=False)

    def __post_init__(self) -> None:
        env = ImmutableSandboxedEnvironment(trim_blocks=True, lstrip_blocks=True)
        env.globals["raise_exception"] = _raise_template_exception
        self._template = env.from_string(self.source)

    def render(self, messages: Sequence[ChatMessage], add_generation_prompt: bool = True) -> str:
        prompt = self._template.render(
            messages=[message.to_dict() for message in messages],
            add_generation_prompt=add_generation_prompt,
            bos_token=self.bos_token,
            eos_token=self.eos_token,
        )
        if self.bos_token and prompt.startswith(self.bos_token):
            prompt = prompt[len(self.bos_token) :]
        return prompt


# Registry mapping template names to their definitions
CHAT_TEMPLATE_REGISTRY: dict[str, LegacyChatTemplate] = {
    "vicuna": LegacyChatTemplate(
        name="vicuna",
        roles={
            SYSTEM_ROLE: RoleFormat("", "\n"),
            USER_ROLE: RoleFormat("USER: ", "\n"),
            ASSISTANT_ROLE: RoleFormat("ASSISTANT: ", "</s>\n"),
        },
        generation_prompt="ASSISTANT:",
        antiprompt="ASSISTANT:",
    ),
    "deepseek": LegacyChatTemplate(
        name="deepseek",
        roles={
            SYSTEM_ROLE: RoleFormat("", "\n\n"),
            USER_ROLE: RoleFormat("### Instruction:\n", "\n"),
            ASSISTANT_ROLE: RoleFormat("### Response:\n", "\n<|EOT|>\n"),
        },
        generation_prompt="### Response:\n",
        antiprompt="###",
    ),
    "chatml": LegacyChatTemplate(
        name="chatml",
        roles={
            SYSTEM_ROLE: RoleFormat("<|im_start|>system\n", "<|im_end|>\n"),
            USER_ROLE: RoleFormat("<|im_start|>user\n", "<|im_end|>\n"),
            ASSISTANT_ROLE: RoleFormat("<|im_start|>assistant\n", "<|im_end|>\n"),
        },
        generation_prompt="<|im_start|>assistant\n",
    ),
    "gemma": LegacyChatTemplate(
        name="gemma",
        roles={
            SYSTEM_ROLE: RoleFormat("<start_of_turn>user\n", "<end_of_turn>\n"),
            USER_ROLE: RoleFormat("<start_of_turn>user\n", "<end_of_turn>\n"),
            ASSISTANT_ROLE: RoleFormat("<start_of_turn>model\n", "<end_of_turn>\n"),
        },
        generation_prompt="<start_of_turn>model\n",
    ),
}

# Names that select the template embedded in the model file
MODEL_TEMPLATE_ALIASES = {"auto", "jinja", "model"}


def resolve_chat_template(
    name: str | None,
    *,
    model_template: str | None,
    bos_token: str = "",
    eos_token: str = "",
    template_file: str | None = None,
) -> ChatTemplate:
    """Pick the chat template for a session.

    Parameters
    ----------
    name : str | None
        A registered template name, an alias for the model's own template
        (``None``, ``"auto"``, ``"jinja"``, ``"model"``), or inline Jinja source.
    model_template : str | None
        Jinja source embedded in the model file, if any.
    bos_token, eos_token : str, optional
        Vocabulary texts exposed to Jinja templates.
    template_file : str | None, optional
        Path of a Jinja template that overrides everything else.

    Returns
    -------
    ChatTemplate
        The resolved template.

    Raises
    ------
    ValueError
        If the template file is missing, the name is unknown, the model has no
        template to fall back to, or the Jinja source does not compile.
    """
    try:
        if template_file:
            path = Path(template_file)
            if not path.exists():
                raise ValueError(f"Chat template file {template_file} does not exist")
            return JinjaChatTemplate(
                source=path.read_text(), bos_token=bos_token, eos_token=eos_token, name=path.name
            )

        if name is not None and name.lower() in CHAT_TEMPLATE_REGISTRY:
            return CHAT_TEMPLATE_REGISTRY[name.lower()]

        if name is None or name.lower() in MODEL_TEMPLATE_ALIASES:
            if not model_template:
                raise ValueError("Model does not have a chat template and no template name was provided")
            return JinjaChatTemplate(
                source=model_template, bos_token=bos_token, eos_token=eos_token, name="model"
            )

        if "{%" in name or "{{" in name:
            logger.debug("Using inline Jinja chat template")
            return JinjaChatTemplate(
                source=name, bos_token=bos_token, eos_token=eos_token, name="inline"
            )
    except TemplateError as exc:
        raise ValueError(f"Invalid chat template: {exc}") from exc

    raise ValueError(
        f"Unknown chat template '{name}'. Available: {', '.join(sorted(CHAT_TEMPLATE_REGISTRY))}"
    )
