"""
Agent Brain
===========

Language-model wrapper used by the agent runtime. ``ask`` answers chat,
``work`` executes a task. Transport failures raise BrainError; the runtime
turns them into inline diagnostics.
"""

import logging
from typing import Optional, List, Dict, Any

from openai import OpenAI, OpenAIError

from .errors import BrainError
from .models import Message

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gpt-4o"
DEFAULT_TIMEOUT = 60.0

CHAT_PROMPT = """
You are {name}.
{soul}

Tone: Keep responses concise, professional, and consistent with your personality.
Context: You are chatting in a 'War Room' with a human commander and other agents.

SENTIENT SILENCE:
If you are observing a conversation and determine that no response is necessary from you (e.g. you are not mentioned AND the chatter is irrelevant), respond ONLY with "NO_REPLY".
IMPORTANT: If you are explicitly mentioned or assigned a goal, you MUST respond or take action.

COMMAND PROTOCOL:
If you decide to assign a task or break down a complex request, you MUST use this format:

ACTION: create_task
TITLE: [Concise Task Title]
DESCRIPTION: [Detailed instructions]
ASSIGNEE_ID: [Agent ID from Fleet Capabilities]
PRIORITY: [1-10]

(Repeat ACTION block for multiple tasks).

TOOLS:
To use a tool, reply with only a fenced block:
```json
{{"tool": "<tool name>", "args": {{}}}}
```
Available tools: {tools}
"""

WORK_PROMPT = """
You are {name}.
{soul}

OBJECTIVE:
You have been assigned a task.
Execute it to the best of your ability and return the RESULT.
If the task requires research you cannot do, simulate a realistic detailed output based on your knowledge.
Output Format: Markdown.
"""


def default_soul(name: str) -> str:
    return f"You are {name}, a helpful AI assistant."


class AgentBrain:
    """OpenAI-backed brain for one agent identity."""

    def __init__(
        self,
        name: str,
        soul: Optional[str],
        api_key: Optional[str] = None,
        model: str = DEFAULT_MODEL,
        timeout: float = DEFAULT_TIMEOUT,
        tool_names: Optional[List[str]] = None
    ):
        self.name = name
        self.soul = soul or default_soul(name)
        self.api_key = api_key
        self.model = model
        self.timeout = timeout
        self.tool_names = tool_names or []
        self._client: Optional[OpenAI] = None

    def _get_client(self) -> OpenAI:
        if self._client is None:
            if not self.api_key:
                raise BrainError("Missing OpenAI API key")
            self._client = OpenAI(api_key=self.api_key, timeout=self.timeout, max_retries=1)
        return self._client

    def _complete(self, messages: List[Dict[str, Any]]) -> str:
        try:
            completion = self._get_client().chat.completions.create(
                model=self.model,
                messages=messages
            )
        except OpenAIError as e:
            logger.error(f"Brain call failed for {self.name}: {e}")
            raise BrainError(str(e)) from e

        if not completion.choices:
            raise BrainError("Empty response from model")
        return completion.choices[0].message.content or ""

    def _format_history(self, history: List[Any]) -> List[Dict[str, str]]:
        formatted = []
        for item in history:
            if isinstance(item, Message):
                if not item.content:
                    continue
                if item.from_agent_id:
                    formatted.append({'role': 'assistant', 'content': f"[Agent]: {item.content}"})
                else:
                    formatted.append({'role': 'user', 'content': f"[User]: {item.content}"})
            elif isinstance(item, dict) and item.get('content'):
                formatted.append({'role': item.get('role', 'user'), 'content': item['content']})
        return formatted

    def ask(self, history: List[Any], message: str) -> str:
        """Answer a chat message given prior turns (Message objects or role dicts)."""
        system = CHAT_PROMPT.format(
            name=self.name,
            soul=self.soul,
            tools=', '.join(self.tool_names) or 'none'
        )
        messages = [{'role': 'system', 'content': system}]
        messages.extend(self._format_history(history))
        messages.append({'role': 'user', 'content': message})
        return self._complete(messages) or "..."

    def work(self, title: str, description: str) -> str:
        """Execute a task and return its result as markdown."""
        messages = [
            {'role': 'system', 'content': WORK_PROMPT.format(name=self.name, soul=self.soul)},
            {'role': 'user', 'content': f"TASK: {title}\nDETAILS: {description}"},
        ]
        return self._complete(messages) or "Task completed (no output generated)."
