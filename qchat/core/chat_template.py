"""
qchat :: Chat Template

Render a conversation into a prompt string with Jinja2.

Templates come from the tokenizer repository (tokenizer_config.json →
"chat_template") and fall back to a built-in template per architecture.

INL - 2025
"""

import json
import os
from datetime import datetime
from typing import Dict, List, Optional

from qchat.core.logging import get_logger

logger = get_logger("qchat.chat_template")


# ChatML, as used by Qwen
QWEN3_TEMPLATE = (
    "{% for message in messages %}"
    "<|im_start|>{{ message.role }}\n{{ message.content }}<|im_end|>\n"
    "{% endfor %}"
    "{% if add_generation_prompt %}<|im_start|>assistant\n{% endif %}"
)

LLAMA_TEMPLATE = (
    "{{ bos_token if bos_token is defined else '<|begin_of_text|>' }}"
    "{% for message in messages %}"
    "<|start_header_id|>{{ message.role }}<|end_header_id|>\n\n{{ message.content }}<|eot_id|>"
    "{% endfor %}"
    "{% if add_generation_prompt %}<|start_header_id|>assistant<|end_header_id|>\n\n{% endif %}"
)

BUILTIN_TEMPLATES = {
    "qwen3": QWEN3_TEMPLATE,
    "llama": LLAMA_TEMPLATE,
}


def _raise_exception(message: str):
    from jinja2.exceptions import TemplateError

    raise TemplateError(message)


def _strftime_now(fmt: str) -> str:
    return datetime.now().strftime(fmt)


class ChatTemplate:
    """
    Chat template renderer.

    Compiles a Jinja2 template (the same dialect HuggingFace tokenizer
    configs ship) and renders messages into a prompt string.

    special_tokens (bos_token, eos_token, ...) are always available to the
    template; Llama 3 and DeepSeek templates open with {{ bos_token }}.
    """

    def __init__(self, template_str: str, special_tokens: Optional[Dict[str, str]] = None):
        from jinja2.sandbox import ImmutableSandboxedEnvironment

        env = ImmutableSandboxedEnvironment(trim_blocks=True, lstrip_blocks=True)
        env.globals["raise_exception"] = _raise_exception
        env.globals["strftime_now"] = _strftime_now
        self.source = template_str
        self.special_tokens = dict(special_tokens or {})
        self.template = env.from_string(template_str)

    def apply(
        self,
        messages: List[Dict[str, str]],
        add_generation_prompt: bool = True,
        **kwargs,
    ) -> str:
        """
        Render messages into a prompt string.

        Args:
            messages: [{"role": "user", "content": "..."}, ...]
            add_generation_prompt: append assistant turn marker
            **kwargs: extra template variables (e.g. enable_thinking),
                      these override special_tokens of the same name

        Returns:
            formatted prompt string
        """
        variables = {**self.special_tokens, **kwargs}
        return self.template.render(
            messages=messages,
            add_generation_prompt=add_generation_prompt,
            **variables,
        )

    @staticmethod
    def from_file(path: str, special_tokens: Optional[Dict[str, str]] = None) -> "ChatTemplate":
        """Load template from a .jinja file."""
        with open(path, "r", encoding="utf-8") as f:
            return ChatTemplate(f.read(), special_tokens)

    @staticmethod
    def builtin(architecture: str, special_tokens: Optional[Dict[str, str]] = None) -> "ChatTemplate":
        if architecture not in BUILTIN_TEMPLATES:
            raise ValueError(f"No built-in chat template for '{architecture}'")
        return ChatTemplate(BUILTIN_TEMPLATES[architecture], special_tokens)


SPECIAL_TOKEN_KEYS = ("bos_token", "eos_token", "pad_token", "unk_token")


def special_tokens_from_config(config: Dict) -> Dict[str, str]:
    """bos_token / eos_token / ... of a tokenizer_config.json, as plain strings."""
    tokens = {}
    for key in SPECIAL_TOKEN_KEYS:
        value = config.get(key)
        # Older configs store AddedToken dicts
        if isinstance(value, dict):
            value = value.get("content")
        if isinstance(value, str):
            tokens[key] = value
    return tokens


def load_chat_template(tokenizer_dir: Optional[str], architecture: str) -> ChatTemplate:
    """
    Chat template for a model.

    Looks in order for:
      1. chat_template.jinja next to the tokenizer
      2. "chat_template" in tokenizer_config.json
      3. the built-in template of the architecture

    The special tokens of tokenizer_config.json are bound to whichever
    template is picked.
    """
    config: Dict = {}
    if tokenizer_dir:
        config_path = os.path.join(tokenizer_dir, "tokenizer_config.json")
        if os.path.exists(config_path):
            with open(config_path, "r", encoding="utf-8") as f:
                config = json.load(f)
    special_tokens = special_tokens_from_config(config)

    if tokenizer_dir:
        path = os.path.join(tokenizer_dir, "chat_template.jinja")
        if os.path.exists(path):
            logger.info(f"chat_template: {path}")
            return ChatTemplate.from_file(path, special_tokens)

    template = config.get("chat_template")
    # Some repos ship a list of named templates
    if isinstance(template, list):
        named = {t.get("name"): t.get("template") for t in template}
        template = named.get("default")
    if template:
        logger.info(f"chat_template: tokenizer_config.json in {tokenizer_dir}")
        return ChatTemplate(template, special_tokens)

    logger.info(f"chat_template: built-in ({architecture})")
    return ChatTemplate.builtin(architecture, special_tokens)
