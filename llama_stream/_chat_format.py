from __future__ import annotations

import datetime

from typing import (
    Dict,
    List,
    TYPE_CHECKING,
)

import jinja2
from jinja2.sandbox import ImmutableSandboxedEnvironment

if TYPE_CHECKING:
    from ._internals import ModelContext

CHAT_TEMPLATE_KEY = "tokenizer.chat_template"

CHATML_CHAT_TEMPLATE = (
    "{% for message in messages %}"
    "{{ '<|im_start|>' + message['role'] + '\\n' + message['content'] + '<|im_end|>' + '\\n' }}"
    "{% endfor %}"
    "{% if add_generation_prompt %}{{ '<|im_start|>assistant\\n' }}{% endif %}"
)


def _raise_exception(message: str):
    raise jinja2.exceptions.TemplateError(message)


def _strftime_now(fmt: str) -> str:
    return datetime.datetime.now().strftime(fmt)


class ChatFormatter:
    """Renders chat messages into a prompt with a jinja2 chat template,
    normally the one stored in the model's GGUF metadata."""

    def __init__(
        self,
        template: str,
        *,
        bos_token: str = "",
        eos_token: str = "",
    ):
        self.template = template
        self.bos_token = bos_token
        self.eos_token = eos_token

        self._environment = ImmutableSandboxedEnvironment(
            loader=jinja2.BaseLoader(),
            trim_blocks=True,
            lstrip_blocks=True,
        )
        self._environment.globals["raise_exception"] = _raise_exception
        self._environment.globals["strftime_now"] = _strftime_now
        self._template = self._environment.from_string(self.template)

    @classmethod
    def from_model(cls, model: "ModelContext") -> "ChatFormatter":
        template = model.metadata().get(CHAT_TEMPLATE_KEY, CHATML_CHAT_TEMPLATE)

        bos = model.token_bos()
        eos = model.token_eos()
        return cls(
            template,
            bos_token=model.token_get_text(bos) if bos >= 0 else "",
            eos_token=model.token_get_text(eos) if eos >= 0 else "",
        )

    def __call__(
        self,
        messages: List[Dict[str, str]],
        *,
        add_generation_prompt: bool = True,
    ) -> str:
        prompt = self._template.render(
            messages=messages,
            bos_token=self.bos_token,
            eos_token=self.eos_token,
            add_generation_prompt=add_generation_prompt,
        )
        # Tokenization adds the BOS token itself.
        if self.bos_token and prompt.startswith(self.bos_token):
            prompt = prompt[len(self.bos_token):]
        return prompt
