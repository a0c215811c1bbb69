"""
Loop Shield
===========

Rules that decide whether an agent replies to a chat message. Applied in
order, first rejection wins:

1. self-filter: never answer your own message
2. depth cap: messages at or past ``max_depth`` are never answered
3. terminal phrases: ``CASE CLOSED`` / ``INCIDENT RESOLVED`` end a thread
4. completion notices: ``TASK COMPLETED`` only for the mentioned agent or
   the commander
5. eligibility: mentioned anywhere, or proactive in a team channel; only
   the commander replies proactively, and only to messages that carry a
   goal
"""

import re
import logging
from dataclasses import dataclass
from typing import Optional, Iterable

from .models import Agent, Message

logger = logging.getLogger(__name__)

MAX_DEPTH = 5
TERMINAL_PHRASES = ("CASE CLOSED", "INCIDENT RESOLVED")
COMPLETION_MARKER = "TASK COMPLETED"
NO_REPLY = "NO_REPLY"
COMMANDER_ROLE = "commander"

GOAL_INTENT = re.compile(
    r'need|help|fix|check|restart|error|bug|issue|task|urgent|critical|report',
    re.IGNORECASE
)


@dataclass
class ReplyDecision:
    reply: bool
    reason: str
    mentioned: bool = False

    @property
    def mode(self) -> str:
        return "mentioned" if self.mentioned else "proactive"


def is_commander(agent: Agent, commander_names: Optional[Iterable[str]] = None) -> bool:
    """Coordinator: role mentions 'commander', or the name is configured as one."""
    if COMMANDER_ROLE in (agent.role or "").lower():
        return True
    return agent.name in set(commander_names or ())


def is_mentioned(agent: Agent, content: str) -> bool:
    return agent.name.lower() in content.lower()


def is_team_channel(channel_id: str) -> bool:
    return channel_id.startswith("team-")


def has_goal_intent(content: str) -> bool:
    return GOAL_INTENT.search(content) is not None


def is_silence(reply: str) -> bool:
    return NO_REPLY in reply


def should_reply(
    agent: Agent,
    message: Message,
    commander: bool = False,
    max_depth: int = MAX_DEPTH
) -> ReplyDecision:
    """Run the shield rules for one incoming message."""
    channel_id = message.channel_id
    mentioned = is_mentioned(agent, message.content)

    if message.from_agent_id == agent.id:
        return ReplyDecision(False, "self", mentioned)

    if message.depth >= max_depth:
        if mentioned:
            logger.warning(
                f"[{channel_id}] Depth {message.depth} reached, {agent.name} stays silent"
            )
        return ReplyDecision(False, "depth", mentioned)

    if any(phrase in message.content for phrase in TERMINAL_PHRASES):
        logger.info(f"[{channel_id}] Thread closed, {agent.name} standing by")
        return ReplyDecision(False, "terminal", mentioned)

    if COMPLETION_MARKER in message.content and not mentioned and not commander:
        logger.debug(f"[{channel_id}] Ignoring completion notice")
        return ReplyDecision(False, "completion", mentioned)

    if mentioned:
        return ReplyDecision(True, "mentioned", mentioned)

    if not is_team_channel(channel_id):
        return ReplyDecision(False, "not_addressed", mentioned)

    if not commander:
        return ReplyDecision(False, "subordinate", mentioned)

    if not has_goal_intent(message.content):
        return ReplyDecision(False, "chatter", mentioned)

    return ReplyDecision(True, "proactive", mentioned)
