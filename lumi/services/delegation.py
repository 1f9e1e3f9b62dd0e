"""Peer hand-off detection for group conversations.

Agents hand work to each other by writing `@Name`. An agent with nothing to add
replies with the `[eof]` marker, which is stripped before the reply is stored.
"""

import re
from collections.abc import Sequence

from lumi.models.agent import Agent

EOF_MARKER = "[eof]"
DEFAULT_DEPTH_LIMIT = 20

_EOF_PATTERN = re.compile(re.escape(EOF_MARKER), re.IGNORECASE)


def strip_eof_marker(text: str) -> str:
    return _EOF_PATTERN.sub("", text).strip()


def find_mentioned_peers(text: str, speaker_id: str, participants: Sequence[Agent]) -> list[Agent]:
    """Participants other than the speaker mentioned as `@Name`, in participant order."""
    lowered = text.lower()
    mentioned: list[Agent] = []
    seen: set[str] = set()
    for agent in participants:
        if agent.id == speaker_id or agent.id in seen:
            continue
        if f"@{agent.name.lower()}" in lowered:
            mentioned.append(agent)
            seen.add(agent.id)
    return mentioned


class DelegationRouter:
    """Decides which peers run next after an agent's turn.

    `depth` counts delegated invocations already made for the current user turn,
    so one turn produces at most `depth_limit + 1` invocations per responder.
    """

    def __init__(self, depth_limit: int = DEFAULT_DEPTH_LIMIT):
        if depth_limit < 0:
            raise ValueError("depth_limit must not be negative")
        self.depth_limit = depth_limit

    def is_exhausted(self, depth: int) -> bool:
        return depth >= self.depth_limit

    def remaining(self, depth: int) -> int:
        return max(0, self.depth_limit - depth)

    def plan(self, text: str, speaker: Agent, participants: Sequence[Agent], depth: int) -> list[Agent]:
        """Peers to invoke next, trimmed to the remaining depth budget."""
        if len(participants) < 2 or self.is_exhausted(depth):
            return []
        cleaned = strip_eof_marker(text)
        if not cleaned:
            return []
        targets = find_mentioned_peers(cleaned, speaker.id, participants)
        return targets[: self.remaining(depth)]
