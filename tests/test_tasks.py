"""Task registry: creation, claim protocol, assignment, status transitions."""

import threading

import pytest

from fleet.errors import AuthorizationError, InvalidStatusError, NotFoundError
from fleet.models import TaskStatus

from tests.conftest import ORG, OTHER_ORG


class TestCreate:

    def test_defaults_to_inbox(self, orch):
        task = orch.tasks.create(ORG, "Rotate keys", "Rotate the staging keys")
        stored = orch.tasks.get(ORG, task.id)
        assert stored.status == TaskStatus.INBOX.value
        assert stored.assignees == []

    def test_with_assignee_starts_assigned(self, orch, agent):
        task = orch.tasks.create(ORG, "Patch", "Apply patch", assignee_id=agent.id)
        stored = orch.tasks.get(ORG, task.id)
        assert stored.status == TaskStatus.ASSIGNED.value
        assert stored.assignee_ids == [agent.id]
        assert stored.assigned_to == agent.id

    def test_logs_task_created(self, orch):
        task = orch.tasks.create(ORG, "Audit", "Audit logs")
        kinds = [(a.kind, a.payload.task_id) for a in orch.activities.list(ORG)]
        assert ("task_created", task.id) in kinds

    def test_foreign_assignee_rejected(self, orch, foreign_agent):
        with pytest.raises(AuthorizationError):
            orch.tasks.create(ORG, "Sneaky", "x", assignee_id=foreign_agent.id)
        assert orch.tasks.list(ORG) == []

    def test_bad_priority(self, orch):
        with pytest.raises(ValueError):
            orch.tasks.create(ORG, "Loud", "x", priority=11)

    def test_bad_status(self, orch):
        with pytest.raises(InvalidStatusError):
            orch.tasks.create(ORG, "Odd", "x", status="someday")


class TestClaim:

    def test_claim_inbox_task(self, orch, agent):
        task = orch.tasks.create(ORG, "Investigate", "Look into alerts")
        assert orch.tasks.claim(ORG, task.id, agent.id) is True

        stored = orch.tasks.get(ORG, task.id)
        assert stored.status == TaskStatus.IN_PROGRESS.value
        assert stored.assignees == [agent.id]

        claimed = [a for a in orch.activities.list(ORG, kind="task_assigned")]
        assert claimed and claimed[0].payload.claimed is True

    def test_second_claim_loses(self, orch, agent, other_agent):
        task = orch.tasks.create(ORG, "Investigate", "Look into alerts")
        assert orch.tasks.claim(ORG, task.id, agent.id) is True
        assert orch.tasks.claim(ORG, task.id, other_agent.id) is False
        assert orch.tasks.get(ORG, task.id).assignees == [agent.id]

    def test_claim_non_inbox_is_noop(self, orch, agent, other_agent):
        task = orch.tasks.create(ORG, "Direct", "x", assignee_id=agent.id)
        assert orch.tasks.claim(ORG, task.id, other_agent.id) is False
        stored = orch.tasks.get(ORG, task.id)
        assert stored.status == TaskStatus.ASSIGNED.value
        assert stored.assignees == [agent.id]

    def test_claim_across_orgs_rejected(self, orch, foreign_agent):
        task = orch.tasks.create(ORG, "Mine", "x")
        with pytest.raises(AuthorizationError):
            orch.tasks.claim(ORG, task.id, foreign_agent.id)
        with pytest.raises(AuthorizationError):
            orch.tasks.claim(OTHER_ORG, task.id, foreign_agent.id)
        assert orch.tasks.get(ORG, task.id).status == TaskStatus.INBOX.value

    def test_claim_unknown_task(self, orch, agent):
        with pytest.raises(NotFoundError):
            orch.tasks.claim(ORG, "missing", agent.id)

    def test_concurrent_claims_have_one_winner(self, orch, team):
        agents = [orch.agents.hire(ORG, f"Racer{i}", "Engineer", team_id=team.id) for i in range(6)]
        task = orch.tasks.create(ORG, "Hot potato", "Only one may hold it")

        barrier = threading.Barrier(len(agents))
        results = {}

        def attempt(agent_id):
            barrier.wait()
            results[agent_id] = orch.tasks.claim(ORG, task.id, agent_id)

        threads = [threading.Thread(target=attempt, args=(a.id,)) for a in agents]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        winners = [agent_id for agent_id, won in results.items() if won]
        assert len(winners) == 1
        stored = orch.tasks.get(ORG, task.id)
        assert stored.status == TaskStatus.IN_PROGRESS.value
        assert stored.assignees == winners


class TestAssignAndStatus:

    def test_assign_overrides_without_inbox_precondition(self, orch, agent, other_agent):
        task = orch.tasks.create(ORG, "Handover", "x", assignee_id=agent.id)
        orch.tasks.assign(ORG, task.id, other_agent.id)
        stored = orch.tasks.get(ORG, task.id)
        assert stored.status == TaskStatus.ASSIGNED.value
        assert stored.assignees == [other_agent.id]

    def test_assign_foreign_agent_rejected(self, orch, foreign_agent):
        task = orch.tasks.create(ORG, "Mine", "x")
        with pytest.raises(AuthorizationError):
            orch.tasks.assign(ORG, task.id, foreign_agent.id)

    def test_update_status_notifies_listeners(self, orch):
        seen = []
        orch.tasks.add_status_listener(lambda org, task_id, status: seen.append((org, task_id, status)))
        task = orch.tasks.create(ORG, "Review", "x")
        orch.tasks.update_status(ORG, task.id, TaskStatus.REVIEW.value)
        assert (ORG, task.id, "review") in seen

    def test_listener_failure_does_not_undo_update(self, orch):
        def broken(org, task_id, status):
            raise RuntimeError("listener down")

        orch.tasks.add_status_listener(broken)
        task = orch.tasks.create(ORG, "Review", "x")
        orch.tasks.update_status(ORG, task.id, TaskStatus.REVIEW.value)
        assert orch.tasks.get(ORG, task.id).status == TaskStatus.REVIEW.value

    def test_update_status_rejects_unknown(self, orch):
        task = orch.tasks.create(ORG, "Review", "x")
        with pytest.raises(InvalidStatusError):
            orch.tasks.update_status(ORG, task.id, "finished-ish")

    def test_update_status_other_org(self, orch):
        task = orch.tasks.create(ORG, "Review", "x")
        with pytest.raises(AuthorizationError):
            orch.tasks.update_status(OTHER_ORG, task.id, TaskStatus.DONE.value)

    def test_complete_records_output_once(self, orch, agent):
        task = orch.tasks.create(ORG, "Report", "x", assignee_id=agent.id)
        assert orch.tasks.complete(ORG, task.id, agent.id, "All green") is True
        assert orch.tasks.complete(ORG, task.id, agent.id, "Again") is False

        stored = orch.tasks.get(ORG, task.id)
        assert stored.status == TaskStatus.DONE.value
        assert stored.output == "All green"
        assert len(orch.activities.list(ORG, kind="task_completed")) == 1


class TestQueries:

    def test_list_orders_by_priority(self, orch):
        orch.tasks.create(ORG, "Low", "x", priority=2)
        orch.tasks.create(ORG, "None", "x")
        orch.tasks.create(ORG, "High", "x", priority=9)
        assert [t.title for t in orch.tasks.list(ORG)] == ["High", "Low", "None"]

    def test_list_is_org_scoped(self, orch):
        orch.tasks.create(ORG, "Ours", "x")
        orch.tasks.create(OTHER_ORG, "Theirs", "x")
        assert [t.title for t in orch.tasks.list(ORG)] == ["Ours"]

    def test_find_assigned(self, orch, agent, other_agent):
        mine = orch.tasks.create(ORG, "Mine", "x", assignee_id=agent.id)
        orch.tasks.create(ORG, "Theirs", "x", assignee_id=other_agent.id)
        assert [t.id for t in orch.tasks.find_assigned(ORG, agent.id)] == [mine.id]

    def test_delete(self, orch):
        task = orch.tasks.create(ORG, "Temp", "x")
        orch.tasks.delete(ORG, task.id)
        with pytest.raises(NotFoundError):
            orch.tasks.get(ORG, task.id)
