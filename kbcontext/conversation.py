"""Conversation history rendering for query enhancement."""

from __future__ import annotations

from typing import Any, Iterable, Mapping, Union

from kbcontext.models import ChatMessage

_ROLE_LABELS = {"user": "User", "assistant": "Assistant"}


def _role_and_content(message: Union[ChatMessage, Mapping[str, Any]]) -> tuple:
    if isinstance(message, ChatMessage):
        return message.role, message.content
    return message.get("role"), message.get("content", "")


def build_conversation_history(messages: Iterable[Union[ChatMessage, Mapping[str, Any]]]) -> str:
    """
    Render every message except the last as ``User: ...`` / ``Assistant: ...`` lines.

    The last message is the query being answered, so it is left out.
    System and tool messages are skipped.
    """
    messages = list(messages)
    lines = []
    for message in messages[:-1]:
        role, content = _role_and_content(message)
        label = _ROLE_LABELS.get(str(role).lower()) if role else None
        if label is None:
            continue
        lines.append(f"{label}: {content or ''}")
    return "\n".join(lines).strip()
