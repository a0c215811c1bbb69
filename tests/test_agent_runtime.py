"""Per-agent runtime: bootstrap, heartbeat hot-swap, task loop and chat loop."""

import pytest

from fleet.agent_runner import AgentRuntime, AgentRunner, parse_args
from fleet.errors import NotFoundError
from fleet.models import AgentStatus, TaskStatus, GENERAL_CHANNEL, team_channel, task_channel

from tests.conftest import ORG


@pytest.fixture
def runtime(orch, agent, brain_factory):
    rt = AgentRuntime(orch, agent.name, org_id=ORG, brain_factory=brain_factory)
    rt.bootstrap()
    return rt


@pytest.fixture
def commander(orch, team):
    return orch.agents.hire(ORG, "Jarvis", "Commander", team_id=team.id)


@pytest.fixture
def commander_runtime(orch, commander, brain_factory):
    rt = AgentRuntime(orch, commander.name, org_id=ORG, brain_factory=brain_factory)
    rt.bootstrap()
    return rt


class TestBootstrap:

    def test_downloads_identity_and_builds_brain(self, runtime, orch, agent, brains, vault):
        assert runtime.identity.id == agent.id
        assert len(brains) == 1
        assert brains[0].soul == "Calm and precise."
        assert brains[0].api_key == "sk-from-vault"
        assert vault.lookups == [(ORG, "openai_api_key")]

        stored = orch.agents.get(ORG, agent.id)
        assert stored.status == AgentStatus.IDLE.value
        assert stored.session_key.startswith("universal:")
        assert stored.last_heartbeat is not None

    def test_configured_key_skips_vault(self, orch, agent, brain_factory, brains, vault):
        orch.config['brain']['api_key'] = "sk-from-env"
        rt = AgentRuntime(orch, agent.name, org_id=ORG, brain_factory=brain_factory)
        rt.bootstrap()
        assert brains[0].api_key == "sk-from-env"
        assert vault.lookups == []

    def test_unknown_agent_is_fatal(self, orch, brain_factory):
        rt = AgentRuntime(orch, "Ghost", org_id=ORG, brain_factory=brain_factory)
        with pytest.raises(NotFoundError):
            rt.bootstrap()

    def test_shutdown_marks_offline(self, runtime, orch, agent):
        runtime.shutdown()
        assert orch.agents.get(ORG, agent.id).status == AgentStatus.OFFLINE.value


class TestHeartbeat:

    def test_soul_change_swaps_brain(self, runtime, orch, agent, brains):
        orch.agents.update(ORG, agent.id, soul="Terse and sarcastic.")

        runtime.heartbeat_tick()

        assert len(brains) == 2
        assert runtime.brain is brains[1]
        assert brains[1].soul == "Terse and sarcastic."
        assert runtime.identity.soul == "Terse and sarcastic."

    def test_unchanged_soul_keeps_brain(self, runtime, brains):
        runtime.heartbeat_tick()
        assert len(brains) == 1

    def test_failure_is_swallowed(self, runtime, orch, agent, brains):
        orch.agents.remove(ORG, agent.id)
        runtime.heartbeat_tick()
        assert runtime.brain is brains[0]


class TestTaskLoop:

    def test_assigned_then_executed(self, runtime, orch, agent, team):
        task = orch.tasks.create(ORG, "Rotate logs", "Compress old logs", team_id=team.id, assignee_id=agent.id)

        runtime.task_tick()
        assert orch.tasks.get(ORG, task.id).status == TaskStatus.IN_PROGRESS.value
        working = orch.agents.get(ORG, agent.id)
        assert working.status == AgentStatus.WORKING.value
        assert working.current_task_id == task.id

        runtime.task_tick()
        done = orch.tasks.get(ORG, task.id)
        assert done.status == TaskStatus.DONE.value
        assert done.output == "Finished Rotate logs"
        idle = orch.agents.get(ORG, agent.id)
        assert idle.status == AgentStatus.IDLE.value
        assert idle.current_task_id is None

        messages = orch.chat.list(ORG, team_channel(team.id))
        assert len(messages) == 1
        assert messages[0].content.startswith("✅ TASK COMPLETED: Rotate logs")
        assert messages[0].depth == 1

    def test_brain_failure_becomes_output(self, runtime, orch, agent):
        task = orch.tasks.create(ORG, "Rotate logs", "x", assignee_id=agent.id)
        runtime.brain.fail = True
        runtime.task_tick()
        runtime.task_tick()
        assert orch.tasks.get(ORG, task.id).output == "[Brain Malfunction]: timeout"

    def test_claims_unscoped_inbox_task(self, runtime, orch, agent):
        task = orch.tasks.create(ORG, "Triage", "Look at the queue")

        runtime.task_tick()

        stored = orch.tasks.get(ORG, task.id)
        assert stored.status == TaskStatus.IN_PROGRESS.value
        assert stored.assignees == [agent.id]
        assert orch.agents.get(ORG, agent.id).current_task_id == task.id
        assert runtime.channels()[-1] == task_channel(task.id)

    def test_skips_other_teams_inbox(self, runtime, orch):
        other_team = orch.agents.create_team(ORG, "Marketing")
        task = orch.tasks.create(ORG, "Write copy", "x", team_id=other_team.id)
        runtime.task_tick()
        assert orch.tasks.get(ORG, task.id).status == TaskStatus.INBOX.value

    def test_one_claim_per_tick(self, runtime, orch, agent):
        orch.tasks.create(ORG, "First", "x", priority=9)
        orch.tasks.create(ORG, "Second", "x", priority=1)
        runtime.task_tick()
        assert [t.title for t in orch.tasks.list(ORG, status=TaskStatus.INBOX.value)] == ["Second"]


class TestChatLoop:

    def test_replies_to_mention(self, runtime, orch, agent):
        orch.chat.send(ORG, GENERAL_CHANNEL, "Marcus, what's the status?")

        replies = runtime.chat_tick()

        assert len(replies) == 1
        assert replies[0].from_agent_id == agent.id
        assert replies[0].channel_id == GENERAL_CHANNEL
        assert replies[0].depth == 1
        assert runtime.brain.prompts == ["Marcus, what's the status?"]

    def test_cursor_advances(self, runtime, orch):
        orch.chat.send(ORG, GENERAL_CHANNEL, "Marcus, ping")
        runtime.chat_tick()
        assert runtime.chat_tick() == []
        assert len(runtime.brain.prompts) == 1

    def test_cursor_advances_without_reply(self, runtime, orch):
        sent = orch.chat.send(ORG, GENERAL_CHANNEL, "nobody in particular")
        assert runtime.chat_tick() == []
        assert runtime.cursors[GENERAL_CHANNEL] == sent.timestamp

    def test_depth_cap(self, runtime, orch):
        orch.chat.send(ORG, GENERAL_CHANNEL, "Marcus, deep thread", depth=5)
        assert runtime.chat_tick() == []

        orch.chat.send(ORG, GENERAL_CHANNEL, "Marcus, still ok", depth=4)
        replies = runtime.chat_tick()
        assert len(replies) == 1
        assert replies[0].depth == 5

    def test_never_answers_itself(self, runtime, orch, agent):
        orch.chat.send(ORG, GENERAL_CHANNEL, "Marcus talking to Marcus", agent_id=agent.id)
        assert runtime.chat_tick() == []

    def test_silence_sentinel(self, runtime, orch):
        runtime.brain.replies = ["NO_REPLY"]
        orch.chat.send(ORG, GENERAL_CHANNEL, "Marcus, thoughts?")
        assert runtime.chat_tick() == []
        assert len(orch.chat.list(ORG, GENERAL_CHANNEL)) == 1

    def test_brain_error_is_reported_inline(self, runtime, orch):
        runtime.brain.fail = True
        orch.chat.send(ORG, GENERAL_CHANNEL, "Marcus?")
        replies = runtime.chat_tick()
        assert replies[0].content == "[Brain Malfunction]: connection reset"

    def test_tool_call_is_executed_and_reasked(self, runtime, orch):
        runtime.brain.replies = [
            'Let me check.\n```json\n{"tool": "check_server_health", "args": {"server_id": "web-1"}}\n```',
            "web-1 looks healthy.",
        ]
        orch.chat.send(ORG, GENERAL_CHANNEL, "Marcus, is web-1 ok?")

        replies = runtime.chat_tick()

        assert replies[0].content == "web-1 looks healthy."
        assert runtime.brain.prompts[1].startswith("System: Tool executed. Result: [web-1] Status:")
        assert runtime.brain.histories[1][0]['role'] == 'assistant'

    def test_malformed_tool_call_noted(self, runtime, orch):
        runtime.brain.replies = ["Checking\n```json\n{oops}\n```"]
        orch.chat.send(ORG, GENERAL_CHANNEL, "Marcus, check it")
        replies = runtime.chat_tick()
        assert replies[0].content.endswith("(System: I tried to use a tool but failed.)")

    def test_reads_team_channel_but_stays_quiet_unaddressed(self, runtime, orch, team):
        orch.chat.send(ORG, team_channel(team.id), "urgent: need a fix for the API error")
        assert runtime.chat_tick() == []
        assert team_channel(team.id) in runtime.cursors


class TestCommander:

    def test_context_injection(self, commander_runtime, orch, agent):
        orch.tasks.create(ORG, "Inbox item", "x")
        orch.chat.send(ORG, GENERAL_CHANNEL, "Jarvis, who is free?")

        commander_runtime.chat_tick()

        prompt = commander_runtime.brain.prompts[0]
        assert prompt.startswith("FLEET_CAPABILITIES: ")
        assert agent.id in prompt
        assert "ACTIVE_TASKS: " in prompt
        assert "Inbox item" in prompt
        assert prompt.endswith("USER_MESSAGE: Jarvis, who is free?")

    def test_proactive_on_team_goal(self, commander_runtime, orch, team):
        orch.chat.send(ORG, team_channel(team.id), "We need to fix the checkout bug")
        assert len(commander_runtime.chat_tick()) == 1

    def test_create_task_actions(self, commander_runtime, orch, commander, other_agent, team):
        commander_runtime.brain.replies = [
            "Delegating.\n"
            "ACTION: create_task\n"
            "TITLE: Fix checkout\n"
            "DESCRIPTION: Checkout returns 500\n"
            f"ASSIGNEE_ID: {other_agent.id}\n"
            "PRIORITY: 9\n"
            "MISSION_ID: mission-checkout\n"
            "ACTION: create_task\n"
            "TITLE: Broken block\n"
        ]
        orch.chat.send(ORG, GENERAL_CHANNEL, "Jarvis, the checkout is down")

        replies = commander_runtime.chat_tick()

        tasks = orch.tasks.find_assigned(ORG, other_agent.id)
        assert len(tasks) == 1
        task = tasks[0]
        assert task.title == "Fix checkout"
        assert task.status == TaskStatus.ASSIGNED.value
        assert task.priority == 9
        assert task.mission_id == "mission-checkout"
        assert task.created_by == commander.id
        assert task.team_id == team.id
        assert len(replies) == 1

    def test_unknown_assignee_skipped(self, commander_runtime, orch):
        commander_runtime.brain.replies = [
            "ACTION: create_task\nTITLE: T\nDESCRIPTION: D\nASSIGNEE_ID: nobody\n"
        ]
        orch.chat.send(ORG, GENERAL_CHANNEL, "Jarvis, delegate this")
        assert len(commander_runtime.chat_tick()) == 1
        assert orch.tasks.list(ORG) == []


class TestRunner:

    def test_tickers_follow_config(self, orch, agent, brain_factory):
        orch.config['runtime']['chat_interval'] = 2
        runner = AgentRunner(AgentRuntime(orch, agent.name, org_id=ORG, brain_factory=brain_factory))
        intervals = {t.name: t.interval for t in runner.tickers}
        assert intervals == {'heartbeat': 10.0, 'tasks': 5.0, 'chat': 2.0}

    def test_start_and_stop(self, orch, agent, brain_factory):
        runner = AgentRunner(AgentRuntime(orch, agent.name, org_id=ORG, brain_factory=brain_factory))
        runner.start()
        assert all(t.running for t in runner.tickers)
        runner.stop()
        assert not any(t.running for t in runner.tickers)
        assert orch.agents.get(ORG, agent.id).status == AgentStatus.OFFLINE.value

    def test_parse_args(self):
        args = parse_args(['--name', 'Jarvis', '--org', 'acme'])
        assert args.name == 'Jarvis'
        assert args.org == 'acme'
        assert args.config is None
