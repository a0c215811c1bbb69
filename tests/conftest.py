"""Shared pytest fixtures: a SQLite-backed orchestrator with fake cloud, vault and brain."""

import copy
from typing import Any, Dict, List, Optional

import pytest

from fleet.config import DEFAULT_CONFIG
from fleet.errors import BrainError
from fleet.orchestrator import FleetOrchestrator

ORG = "org-a"
OTHER_ORG = "org-b"


class FakeCloud:
    """Records machine lifecycle calls instead of talking to Fly.io."""

    def __init__(self):
        self.spawned: List[str] = []
        self.stopped: List[str] = []
        self.fail_spawn = False
        self.fail_stop = False

    def spawn_machine(self, agent_id: str, agent_name: str) -> str:
        if self.fail_spawn:
            raise RuntimeError("fly.io unavailable")
        machine_id = f"machine-{len(self.spawned) + 1}"
        self.spawned.append(machine_id)
        return machine_id

    def stop_machine(self, machine_id: str) -> None:
        if self.fail_stop:
            raise RuntimeError("fly.io unavailable")
        self.stopped.append(machine_id)


class FakeVault:
    def __init__(self, secrets: Optional[Dict[str, str]] = None):
        self.secrets = dict(secrets or {})
        self.lookups: List[tuple] = []

    def get_secret(self, org_id: str, key: str) -> Optional[str]:
        self.lookups.append((org_id, key))
        return self.secrets.get(f"{org_id}/{key}")

    def set_secret(self, org_id: str, key: str, value: str) -> None:
        self.secrets[f"{org_id}/{key}"] = value


class FakeBrain:
    """Scripted brain: replies are popped in order, prompts are recorded."""

    def __init__(self, name: str, soul: Optional[str] = None, api_key: Optional[str] = None):
        self.name = name
        self.soul = soul
        self.api_key = api_key
        self.replies: List[str] = []
        self.prompts: List[str] = []
        self.histories: List[Any] = []
        self.work_calls: List[tuple] = []
        self.fail = False

    def ask(self, history, message: str) -> str:
        self.histories.append(history)
        self.prompts.append(message)
        if self.fail:
            raise BrainError("connection reset")
        if self.replies:
            return self.replies.pop(0)
        return f"{self.name} here, on it."

    def work(self, title: str, description: str) -> str:
        self.work_calls.append((title, description))
        if self.fail:
            raise BrainError("timeout")
        return f"Finished {title}"


def make_config(tmp_path) -> Dict[str, Any]:
    config = copy.deepcopy(DEFAULT_CONFIG)
    config['database'] = {'type': 'sqlite', 'path': str(tmp_path / 'fleet.db')}
    config['redis_url'] = None
    config['tools'] = {'log_dir': str(tmp_path / 'logs')}
    config['runtime']['commander_names'] = ['Jarvis']
    return config


@pytest.fixture
def config(tmp_path):
    return make_config(tmp_path)


@pytest.fixture
def cloud():
    return FakeCloud()


@pytest.fixture
def vault():
    return FakeVault({f"{ORG}/openai_api_key": "sk-from-vault"})


@pytest.fixture
def orch(config, cloud, vault):
    return FleetOrchestrator(config, cloud=cloud, vault=vault)


@pytest.fixture
def team(orch):
    return orch.agents.create_team(ORG, "Ops")


@pytest.fixture
def agent(orch, team):
    return orch.agents.hire(ORG, "Marcus", "SRE", soul="Calm and precise.", team_id=team.id)


@pytest.fixture
def other_agent(orch, team):
    return orch.agents.hire(ORG, "Ada", "Engineer", team_id=team.id)


@pytest.fixture
def foreign_agent(orch):
    return orch.agents.hire(OTHER_ORG, "Mallory", "Engineer")


@pytest.fixture
def brains():
    """Every FakeBrain built by a runtime's brain factory, in order."""
    return []


@pytest.fixture
def brain_factory(brains):
    def factory(name, soul, api_key):
        brain = FakeBrain(name, soul, api_key)
        brains.append(brain)
        return brain
    return factory
