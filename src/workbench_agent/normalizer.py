"""Turn free-form model output into a ``{reply, actions}`` value.

Backends are asked for a single JSON object but regularly wrap it in a
markdown fence, surround it with prose, or skip JSON altogether. We parse
defensively so one formatting slip does not cost the whole turn.
"""

import json
import re

from workbench_agent.actions import ActionProposal
from workbench_agent.errors import EmptyOutputError, MalformedActionsError
from workbench_agent.models import AgentReply

DEFAULT_REPLY = "Suggestions generated."

_JSON_FENCE = re.compile(r"```[ \t]*json[ \t]*\r?\n?(.*?)```", re.IGNORECASE | re.DOTALL)


def extract_json_block(text: str) -> str:
    """Best-effort slice of the JSON object inside model text."""
    fenced = _JSON_FENCE.search(text)
    if fenced:
        return fenced.group(1).strip()

    start = text.find("{")
    end = text.rfind("}")
    if start != -1 and end > start:
        return text[start : end + 1]
    return text.strip()


def normalize(raw_text: str | None) -> AgentReply:
    """Normalize model output.

    Raises:
        EmptyOutputError: output is empty or whitespace only.
        MalformedActionsError: a JSON object was found but its ``actions``
            are not a list of well-formed proposals.
    """
    content = raw_text or ""
    try:
        parsed = json.loads(extract_json_block(content))
    except (ValueError, RecursionError):
        parsed = None

    if isinstance(parsed, dict):
        reply = parsed.get("reply")
        if not isinstance(reply, str):
            reply = DEFAULT_REPLY
        raw_actions = parsed.get("actions")
        if raw_actions is None:
            raw_actions = []
        if not isinstance(raw_actions, list):
            raise MalformedActionsError(
                f"actions must be a list, got {type(raw_actions).__name__}"
            )
        return AgentReply(
            reply=reply,
            actions=[ActionProposal.from_dict(item) for item in raw_actions],
        )

    plain = content.strip()
    if not plain:
        raise EmptyOutputError("model returned empty content")
    return AgentReply(reply=plain, actions=[])
