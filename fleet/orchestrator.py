"""
Fleet Orchestrator
==================

Facade that wires the fleet core over one store:

- task registry, gatekeeper, proposal manager, event dispatcher
- chat router, activity log, agent directory
- agent hire/fire with cloud machine lifecycle
- idle-agent reaper
- optional Redis fan-out of task and proposal events

This is the entry point used by the dashboard, the scheduler and agent
runtimes.
"""

import json
import logging
import threading
from typing import Optional, List, Dict, Any

import redis

from integrations.fly_client import FlyMachinesClient, FlyConfig
from integrations.ssm_vault import SSMVault

from .activities import ActivityLog
from .agents import AgentDirectory
from .config import load_config
from .db import DatabaseConnection
from .errors import FleetError, AuthorizationError, NotFoundError
from .events import EventDispatcher
from .messages import ChatRouter
from .models import Task, TaskStatus, AgentStatus, OPEN_TASK_STATUSES
from .policies import PolicyResolver
from .proposals import ProposalManager
from .protocol import CreateTaskAction
from .tasks import TaskRegistry

logger = logging.getLogger(__name__)


def events_channel(org_id: str) -> str:
    return f"org:{org_id}:events"


class FleetOrchestrator:
    """All fleet components over a single database."""

    def __init__(
        self,
        config: Dict[str, Any],
        cloud: Optional[FlyMachinesClient] = None,
        vault: Optional[SSMVault] = None
    ):
        """
        Initialize the orchestrator.

        Args:
            config: Settings (see config/settings.yaml)
            cloud: Machine lifecycle client; Fly.io from config when omitted
            vault: Secret store; SSM from config when omitted
        """
        self.config = config
        self.db = DatabaseConnection(config.get('database', {}))
        self.db.init_schema()

        self.activities = ActivityLog(self.db)
        self.agents = AgentDirectory(self.db)
        self.chat = ChatRouter(self.db)
        self.tasks = TaskRegistry(self.db, self.agents, self.activities)
        self.policies = PolicyResolver(self.db)
        self.proposals = ProposalManager(
            self.db, self.agents, self.tasks, self.policies, self.chat, self.activities
        )
        self.events = EventDispatcher(self.tasks, self.proposals, self.chat)
        self.tasks.add_status_listener(self.events.on_task_status_changed)

        vault_config = config.get('vault', {})
        self.cloud = cloud or FlyMachinesClient(FlyConfig.from_dict(config.get('cloud', {})))
        self.vault = vault or SSMVault(
            prefix=vault_config.get('prefix', '/mission-control'),
            region=vault_config.get('region')
        )

        self.redis_client = None
        redis_url = config.get('redis_url')
        if redis_url:
            try:
                self.redis_client = redis.from_url(redis_url)
                self.redis_client.ping()
                logger.info("Connected to Redis")
            except redis.RedisError as e:
                logger.warning(f"Redis unavailable: {e}")
                self.redis_client = None

        if self.redis_client:
            self.tasks.add_status_listener(self._publish_status_change)
            self.proposals.add_listener(self.publish_event)

    # ==================== Events ====================

    def publish_event(self, org_id: str, event: str, data: Dict[str, Any]) -> None:
        """Publish to ``org:<org>:events`` when Redis is configured."""
        if not self.redis_client:
            return
        try:
            self.redis_client.publish(events_channel(org_id), json.dumps({'event': event, **data}))
        except redis.RedisError as e:
            logger.warning(f"Failed to publish {event}: {e}")

    def _publish_status_change(self, org_id: str, task_id: str, status: str) -> None:
        self.publish_event(org_id, 'task_status_changed', {'task_id': task_id, 'status': status})

    # ==================== Agent lifecycle ====================

    def hire_agent(
        self,
        org_id: str,
        name: str,
        role: str,
        soul: Optional[str] = None,
        team_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Create the agent record, then boot its machine.

        A failed spawn leaves the agent in place without a container.
        """
        agent = self.agents.hire(org_id, name, role, soul=soul, team_id=team_id)
        result: Dict[str, Any] = {'agent': agent, 'machine_id': None, 'error': None}

        try:
            machine_id = self.cloud.spawn_machine(agent.id, agent.name)
        except Exception as e:
            logger.error(f"Cloud spawn failed for {agent.name}, agent created without machine: {e}")
            result['error'] = "Cloud spawn failed"
            return result

        self.agents.set_container(agent.id, machine_id)
        agent.container_id = machine_id
        result['machine_id'] = machine_id
        return result

    def fire_agent(self, org_id: str, agent_id: str) -> None:
        """Stop the agent's machine and delete it. Refused while it holds open tasks."""
        agent = self.agents.get(org_id, agent_id)
        open_tasks = self.tasks.find_assigned(org_id, agent_id, statuses=OPEN_TASK_STATUSES)
        if open_tasks:
            raise FleetError(
                f"Agent {agent.name} still owns {len(open_tasks)} open task(s); reassign them first"
            )

        if agent.container_id:
            self.cloud.stop_machine(agent.container_id)
        self.agents.remove(org_id, agent_id)
        logger.info(f"Fired agent {agent.name} ({agent_id})")

    def reap_inactive_agents(self, timeout_seconds: int = 900) -> List[str]:
        """
        Stop machines of agents whose heartbeat is older than the timeout.

        Returns:
            Ids of reaped agents
        """
        reaped = []
        for agent in self.agents.find_inactive_with_containers(timeout_seconds):
            logger.info(f"Reaping inactive agent: {agent.name} ({agent.container_id})")
            try:
                self.cloud.stop_machine(agent.container_id)
            except Exception as e:
                logger.error(f"Failed to stop machine {agent.container_id} for {agent.name}: {e}")
                continue
            self.agents.set_container(agent.id, None)
            self.agents.update_status(agent.org_id, agent.id, AgentStatus.OFFLINE.value)
            reaped.append(agent.id)

        if reaped:
            logger.info(f"Reaped {len(reaped)} inactive agent(s)")
        return reaped

    # ==================== Coordination helpers ====================

    def get_fleet_capabilities(self, org_id: str) -> List[Dict[str, Any]]:
        """Roster summary handed to the commander."""
        return [
            {
                'id': agent.id,
                'name': agent.name,
                'role': agent.role,
                'soul': agent.soul or "Default personality.",
                'status': agent.status,
                'team_id': agent.team_id,
            }
            for agent in self.agents.list(org_id)
        ]

    def active_tasks(self, org_id: str, limit: int = 5) -> List[Task]:
        """Open missions: anything in the inbox or grouped under a mission id."""
        tasks = [
            t for t in self.tasks.list(org_id)
            if t.status != TaskStatus.DONE.value
            and (t.mission_id or t.status == TaskStatus.INBOX.value)
        ]
        return tasks[:limit]

    def create_tasks_from_actions(
        self,
        org_id: str,
        actions: List[CreateTaskAction],
        created_by: Optional[str] = None,
        team_id: Optional[str] = None
    ) -> List[Task]:
        """Create one assigned task per parsed action. Bad assignees are skipped."""
        created = []
        for action in actions:
            try:
                task = self.tasks.create(
                    org_id,
                    action.title,
                    action.description,
                    team_id=team_id,
                    priority=action.priority,
                    status=TaskStatus.ASSIGNED.value,
                    assignee_id=action.assignee_id,
                    mission_id=action.mission_id,
                    created_by=created_by
                )
            except (NotFoundError, AuthorizationError) as e:
                logger.warning(f"Skipped task '{action.title}' for {action.assignee_id}: {e}")
                continue
            created.append(task)
        return created

    def get_queue_stats(self, org_id: str) -> Dict[str, int]:
        rows = self.db.execute(
            "SELECT status, COUNT(*) AS count FROM tasks WHERE org_id = %s GROUP BY status",
            (org_id,)
        )
        return {row['status']: int(row['count']) for row in rows}


# Global orchestrator instance (thread-safe singleton)
_orchestrator_instance: Optional[FleetOrchestrator] = None
_orchestrator_lock = threading.Lock()


def get_orchestrator(config: Dict[str, Any] = None) -> FleetOrchestrator:
    """Get or create the orchestrator singleton (thread-safe)."""
    global _orchestrator_instance

    if _orchestrator_instance is None:
        with _orchestrator_lock:
            if _orchestrator_instance is None:
                _orchestrator_instance = FleetOrchestrator(config or load_config())

    return _orchestrator_instance
