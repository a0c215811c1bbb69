"""Chat router: channel partitioning, cursors and authorship checks."""

import threading
import time
from types import SimpleNamespace

import pytest

from fleet.errors import AuthorizationError
from fleet.messages import ChatRouter
from fleet.models import GENERAL_CHANNEL, team_channel, task_channel

from tests.conftest import ORG, OTHER_ORG


def test_channel_names():
    assert team_channel("t1") == "team-t1"
    assert task_channel("x9") == "task-x9"


def test_list_newest_first(orch):
    for i in range(3):
        orch.chat.send(ORG, GENERAL_CHANNEL, f"msg {i}")
    assert [m.content for m in orch.chat.list(ORG, GENERAL_CHANNEL)] == ["msg 2", "msg 1", "msg 0"]


def test_list_recent_after_cursor(orch):
    first = orch.chat.send(ORG, GENERAL_CHANNEL, "old")
    orch.chat.send(ORG, GENERAL_CHANNEL, "new 1")
    orch.chat.send(ORG, GENERAL_CHANNEL, "new 2")

    recent = orch.chat.list_recent(ORG, GENERAL_CHANNEL, first.timestamp)
    assert [m.content for m in recent] == ["new 1", "new 2"]


def test_timestamps_strictly_increase(orch):
    stamps = [orch.chat.send(ORG, GENERAL_CHANNEL, "tick").timestamp for _ in range(20)]
    assert stamps == sorted(set(stamps))


def test_lagging_writer_still_lands_after_cursor(orch, monkeypatch):
    monkeypatch.setattr("fleet.messages.time", SimpleNamespace(time=lambda: 100.0))
    first = orch.chat.send(ORG, GENERAL_CHANNEL, "first")

    second = ChatRouter(orch.db).send(ORG, GENERAL_CHANNEL, "second")

    assert second.timestamp > first.timestamp
    assert [m.content for m in orch.chat.list_recent(ORG, GENERAL_CHANNEL, first.timestamp)] == ["second"]


def test_queued_writer_stamped_after_holder_commits(orch):
    holding = threading.Event()
    release = threading.Event()
    sent = {}

    def holder():
        with orch.db.transaction() as cur:
            sent['held'] = orch.chat.send(ORG, GENERAL_CHANNEL, "held", cursor=cur)
            holding.set()
            release.wait(5)

    def queued():
        sent['queued'] = ChatRouter(orch.db).send(ORG, GENERAL_CHANNEL, "queued")

    first = threading.Thread(target=holder)
    first.start()
    assert holding.wait(5)
    second = threading.Thread(target=queued)
    second.start()
    time.sleep(0.2)

    assert orch.chat.list_recent(ORG, GENERAL_CHANNEL, 0.0) == []

    release.set()
    first.join(10)
    second.join(10)

    delivered = orch.chat.list_recent(ORG, GENERAL_CHANNEL, 0.0)
    assert [m.content for m in delivered] == ["held", "queued"]
    assert sent['queued'].timestamp > sent['held'].timestamp


def test_channels_and_orgs_are_partitioned(orch):
    orch.chat.send(ORG, GENERAL_CHANNEL, "ours")
    orch.chat.send(ORG, "team-x", "team only")
    orch.chat.send(OTHER_ORG, GENERAL_CHANNEL, "theirs")
    assert [m.content for m in orch.chat.list(ORG, GENERAL_CHANNEL)] == ["ours"]


def test_negative_depth_rejected(orch):
    with pytest.raises(ValueError):
        orch.chat.send(ORG, GENERAL_CHANNEL, "bad", depth=-1)


def test_foreign_author_rejected(orch, foreign_agent):
    with pytest.raises(AuthorizationError):
        orch.chat.send(ORG, GENERAL_CHANNEL, "spoof", agent_id=foreign_agent.id)
    assert orch.chat.list(ORG, GENERAL_CHANNEL) == []
