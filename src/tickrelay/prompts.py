import json
from typing import Any, Mapping

from .models import RESERVED_CONTEXT_KEYS

CONTEXT_HEADER = "Context from blackboard:"
USER_PROMPT_LABEL = "User prompt:"


def build_contextual_prompt(user_prompt: str, shared_context: Mapping[str, Any]) -> str:
    """Prepend the session's shared context to the user prompt.

    Every entry except the previous response and prompt is rendered as
    ``key: <json value>``. With nothing eligible the prompt is returned as is.
    """
    context_lines = [
        f"{key}: {json.dumps(value, ensure_ascii=False, separators=(',', ':'))}"
        for key, value in shared_context.items()
        if key not in RESERVED_CONTEXT_KEYS
    ]
    if not context_lines:
        return user_prompt

    context_block = "\n".join(context_lines)
    return f"{CONTEXT_HEADER}\n{context_block}\n\n{USER_PROMPT_LABEL} {user_prompt}"
