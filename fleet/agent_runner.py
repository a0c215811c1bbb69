#!/usr/bin/env python3
"""
Mission Control Agent Runner
============================

Runs one fleet agent. The runner knows only its name; identity, soul and
team are downloaded from the fleet store at startup.

Three duties run on their own tickers:

- heartbeat: refresh last-seen, hot-swap the brain when the soul changes
- tasks: start assigned work, finish in-progress work, claim from the inbox
- chat: read general, team and current-task channels and reply through
  the loop shield

Usage:
    python -m fleet.agent_runner --name Marcus
"""

import argparse
import json
import signal
import sys
import threading
import time
import logging
from typing import Optional, List, Dict, Any, Callable

from integrations.ssm_vault import load_secret

from .brain import AgentBrain
from .config import load_config
from .errors import BrainError, NotFoundError
from .loop_shield import should_reply, is_commander, is_silence, MAX_DEPTH
from .models import (
    Agent, Message, Task, TaskStatus, AgentStatus,
    GENERAL_CHANNEL, team_channel, task_channel,
)
from .protocol import parse_actions, has_actions
from .scheduler import Ticker
from .tools import ToolRegistry, extract_tool_call

logger = logging.getLogger(__name__)

BrainFactory = Callable[[str, Optional[str], Optional[str]], Any]

TOOL_RESULT_PROMPT = "System: Tool executed. Result: {result}. Now answer the user."
TOOL_FAILURE_NOTE = "\n(System: I tried to use a tool but failed.)"


class AgentRuntime:
    """
    Per-agent runtime context.

    Everything one agent caches (identity, brain, channel cursors, API key)
    lives on the instance, so several runtimes can share a process.
    """

    def __init__(
        self,
        orchestrator,
        name: str,
        org_id: Optional[str] = None,
        brain_factory: Optional[BrainFactory] = None,
        tools: Optional[ToolRegistry] = None,
        session_key: Optional[str] = None
    ):
        self.orchestrator = orchestrator
        self.name = name
        self.org_id = org_id
        config = orchestrator.config
        self.runtime_config: Dict[str, Any] = config.get('runtime', {})
        self.brain_config: Dict[str, Any] = config.get('brain', {})
        self.tools = tools or ToolRegistry(config.get('tools', {}).get('log_dir', 'logs'))
        self.brain_factory = brain_factory or self._default_brain
        self.session_key = session_key or f"universal:{int(time.time() * 1000)}"

        self.max_depth = int(self.runtime_config.get('max_depth', MAX_DEPTH))
        self.lookback = float(self.runtime_config.get('chat_lookback_seconds', 900))
        self.commander_names: List[str] = list(self.runtime_config.get('commander_names') or [])
        self.active_task_slice = int(self.runtime_config.get('active_task_slice', 5))

        self.identity: Optional[Agent] = None
        self.brain = None
        self.api_key: Optional[str] = None
        self.cursors: Dict[str, float] = {}
        self._start_cursor = 0.0

    # ==================== Startup / shutdown ====================

    def _default_brain(self, name: str, soul: Optional[str], api_key: Optional[str]):
        return AgentBrain(
            name,
            soul,
            api_key=api_key,
            model=self.brain_config.get('model', 'gpt-4o'),
            timeout=float(self.brain_config.get('timeout', 60)),
            tool_names=self.tools.names()
        )

    def _resolve_api_key(self) -> Optional[str]:
        api_key = self.brain_config.get('api_key')
        if api_key:
            return api_key

        secret_name = self.brain_config.get('api_key_secret', 'openai_api_key')
        logger.info(f"Fetching API key from vault for org {self.identity.org_id}")
        api_key = load_secret(self.orchestrator.vault, self.identity.org_id, secret_name)
        if api_key:
            logger.info("Key retrieved from vault")
        else:
            logger.warning("No key found in vault, brain calls will fail")
        return api_key

    def bootstrap(self) -> Agent:
        """
        Download identity, source credentials and build the brain.

        Raises:
            NotFoundError: no agent with this name has been hired
        """
        self.identity = self.orchestrator.agents.get_identity(self.name, self.org_id)
        self.org_id = self.identity.org_id
        logger.info(f"Identity downloaded: {self.identity.name} ({self.identity.role})")
        logger.info(f"Soul loaded: {'yes' if self.identity.soul else 'using default'}")

        self.api_key = self._resolve_api_key()
        self.brain = self.brain_factory(self.identity.name, self.identity.soul, self.api_key)

        self.orchestrator.agents.heartbeat(
            self.org_id, self.identity.id,
            status=AgentStatus.IDLE.value, session_key=self.session_key
        )
        self._start_cursor = time.time() - self.lookback
        return self.identity

    def shutdown(self) -> None:
        if not self.identity:
            return
        try:
            self.orchestrator.agents.update_status(
                self.org_id, self.identity.id, AgentStatus.OFFLINE.value
            )
        except Exception as e:
            logger.warning(f"Failed to mark {self.name} offline: {e}")

    @property
    def agent_id(self) -> str:
        return self.identity.id

    @property
    def is_commander(self) -> bool:
        return is_commander(self.identity, self.commander_names)

    # ==================== Heartbeat ====================

    def heartbeat_tick(self) -> None:
        """Refresh last-seen and reload the brain if the soul changed."""
        try:
            self.orchestrator.agents.heartbeat(self.org_id, self.agent_id)
            fresh = self.orchestrator.agents.get(self.org_id, self.agent_id)
        except Exception as e:
            logger.warning(f"Heartbeat failed for {self.name}: {e}")
            return

        if fresh.soul != self.identity.soul:
            logger.info(f"Soul update detected for {fresh.name}, reloading brain")
            self.brain = self.brain_factory(fresh.name, fresh.soul, self.api_key)
            logger.info("Brain reloaded")
        self.identity = fresh

    # ==================== Tasks ====================

    def task_tick(self) -> None:
        """Advance held work by one step, or try to claim one inbox task."""
        tasks = self.orchestrator.tasks
        agents = self.orchestrator.agents

        held = tasks.find_assigned(
            self.org_id, self.agent_id,
            statuses=[TaskStatus.ASSIGNED.value, TaskStatus.IN_PROGRESS.value]
        )
        if held:
            task = held[0]
            if task.status == TaskStatus.ASSIGNED.value:
                tasks.update_status(self.org_id, task.id, TaskStatus.IN_PROGRESS.value)
                agents.update_status(
                    self.org_id, self.agent_id, AgentStatus.WORKING.value, current_task_id=task.id
                )
                self.identity.current_task_id = task.id
                logger.info(f"Starting task: {task.title}")
                return

            self._execute(task)
            return

        for task in tasks.list(self.org_id, status=TaskStatus.INBOX.value):
            if task.team_id and task.team_id != self.identity.team_id:
                continue
            logger.info(f"Claiming task: {task.title}")
            if tasks.claim(self.org_id, task.id, self.agent_id):
                agents.update_status(
                    self.org_id, self.agent_id, AgentStatus.WORKING.value, current_task_id=task.id
                )
                self.identity.current_task_id = task.id
            else:
                logger.info(f"Task {task.id} was taken, retrying next tick")
            return

    def _execute(self, task: Task) -> None:
        logger.info(f"Working on: {task.title}")
        try:
            output = self.brain.work(task.title, task.description)
        except BrainError as e:
            logger.error(f"Brain failed on task {task.id}: {e}")
            output = f"[Brain Malfunction]: {e}"

        self.orchestrator.tasks.complete(self.org_id, task.id, self.agent_id, output)
        self.orchestrator.agents.update_status(
            self.org_id, self.agent_id, AgentStatus.IDLE.value, current_task_id=None
        )
        self.identity.current_task_id = None

        channel = team_channel(self.identity.team_id) if self.identity.team_id else GENERAL_CHANNEL
        self.orchestrator.chat.send(
            self.org_id, channel,
            f"✅ TASK COMPLETED: {task.title}\nRESULT: {output}",
            agent_id=self.agent_id, task_id=task.id, depth=1
        )

    # ==================== Chat ====================

    def channels(self) -> List[str]:
        """General, own team, current task."""
        channels = [GENERAL_CHANNEL]
        if self.identity.team_id:
            channels.append(team_channel(self.identity.team_id))
        if self.identity.current_task_id:
            channels.append(task_channel(self.identity.current_task_id))
        return channels

    def chat_tick(self) -> List[Message]:
        """Read new messages on every channel; return the replies posted."""
        replies = []
        for channel_id in self.channels():
            after = self.cursors.setdefault(channel_id, self._start_cursor)
            messages = self.orchestrator.chat.list_recent(self.org_id, channel_id, after)
            if not messages:
                continue

            self.cursors[channel_id] = max(m.timestamp for m in messages)
            for message in messages:
                reply = self.handle_message(message)
                if reply is not None:
                    replies.append(reply)
        return replies

    def handle_message(self, message: Message) -> Optional[Message]:
        """Apply the loop shield and, if allowed, answer one message."""
        commander = self.is_commander
        decision = should_reply(self.identity, message, commander=commander, max_depth=self.max_depth)
        if not decision.reply:
            return None

        logger.info(
            f"[{message.channel_id}] {decision.mode} (depth {message.depth}): {message.content[:80]!r}"
        )
        prompt = self._commander_context(message.content) if commander else message.content
        reply = self._ask([], prompt)
        reply = self._use_tool(reply)

        if is_silence(reply):
            logger.info(f"[{message.channel_id}] {self.name} chose silence")
            return None

        if has_actions(reply):
            self._create_tasks(reply)

        posted = self.orchestrator.chat.send(
            self.org_id, message.channel_id, reply,
            agent_id=self.agent_id, task_id=message.task_id, depth=message.depth + 1
        )
        logger.info(f"Reply: {reply[:120]!r}")
        return posted

    def _ask(self, history: List[Any], prompt: str) -> str:
        try:
            return self.brain.ask(history, prompt)
        except BrainError as e:
            logger.error(f"Brain error for {self.name}: {e}")
            return f"[Brain Malfunction]: {e}"

    def _use_tool(self, reply: str) -> str:
        try:
            call = extract_tool_call(reply)
        except ValueError as e:
            logger.warning(f"Tool call could not be parsed: {e}")
            return reply + TOOL_FAILURE_NOTE
        if call is None:
            return reply

        logger.info(f"{self.name} using tool {call.tool}")
        result = self.tools.execute(call.tool, call.args)
        return self._ask(
            [{'role': 'assistant', 'content': reply}],
            TOOL_RESULT_PROMPT.format(result=result)
        )

    def _commander_context(self, content: str) -> str:
        fleet = self.orchestrator.get_fleet_capabilities(self.org_id)
        active = [
            t.to_dict() for t in self.orchestrator.active_tasks(self.org_id, self.active_task_slice)
        ]
        return (
            f"FLEET_CAPABILITIES: {json.dumps(fleet)}\n\n"
            f"ACTIVE_TASKS: {json.dumps(active)}\n\n"
            f"USER_MESSAGE: {content}"
        )

    def _create_tasks(self, reply: str) -> List[Task]:
        parsed = parse_actions(reply)
        logger.info(
            f"{self.name} issued {len(parsed.actions)} create_task action(s), "
            f"{len(parsed.rejected)} rejected"
        )
        return self.orchestrator.create_tasks_from_actions(
            self.org_id, parsed.actions,
            created_by=self.agent_id, team_id=self.identity.team_id
        )


class AgentRunner:
    """Process wrapper: tickers, signals, startup and shutdown for one runtime."""

    def __init__(self, runtime: AgentRuntime):
        self.runtime = runtime
        config = runtime.runtime_config
        self.tickers = [
            Ticker('heartbeat', float(config.get('heartbeat_interval', 10)), runtime.heartbeat_tick),
            Ticker('tasks', float(config.get('task_interval', 5)), runtime.task_tick, run_immediately=True),
            Ticker('chat', float(config.get('chat_interval', 5)), runtime.chat_tick, run_immediately=True),
        ]
        self.shutdown_requested = threading.Event()

    def _handle_shutdown(self, signum, frame):
        """Handle shutdown signals gracefully."""
        logger.info(f"Received signal {signum}, initiating shutdown...")
        self.shutdown_requested.set()

    def start(self) -> None:
        self.runtime.bootstrap()
        for ticker in self.tickers:
            ticker.start()
        logger.info(f"Agent {self.runtime.name} online")

    def stop(self) -> None:
        for ticker in self.tickers:
            ticker.stop()
        self.runtime.shutdown()
        logger.info(f"Agent {self.runtime.name} offline")

    def run(self) -> None:
        """Run until SIGINT/SIGTERM."""
        signal.signal(signal.SIGTERM, self._handle_shutdown)
        signal.signal(signal.SIGINT, self._handle_shutdown)
        self.start()
        try:
            self.shutdown_requested.wait()
        finally:
            self.stop()


def parse_args(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description='Mission Control Agent Runner - runs a single fleet agent',
        epilog="""
Examples:
  python -m fleet.agent_runner --name Jarvis
  python -m fleet.agent_runner --name Marcus --org acme
"""
    )
    parser.add_argument('--name', '-n', required=True, help='Agent name as hired in the dashboard')
    parser.add_argument('--org', '-o', default=None, help='Organization id when the name is ambiguous')
    parser.add_argument('--config', '-c', default=None, help='Path to settings.yaml')
    return parser.parse_args(argv)


def main(argv=None):
    """Main entry point."""
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    args = parse_args(argv)
    # Strip straight and curly quotes left over from copy-paste
    name = args.name.strip('"\'“”')

    from .orchestrator import get_orchestrator

    config = load_config(args.config)
    runtime = AgentRuntime(get_orchestrator(config), name, org_id=args.org)
    runner = AgentRunner(runtime)

    logger.info(f"Connecting to Mission Control as [{name}]...")
    try:
        runner.run()
    except NotFoundError as e:
        logger.error(f"Startup failed: {e}. Hire this agent in the dashboard first.")
        sys.exit(1)


if __name__ == '__main__':
    main()
