"""
Fly.io Machines client for agent containers.

Without an API token the client runs in mock mode: spawns return a
generated id and stops are no-ops.
"""

import os
import uuid
import logging
from dataclasses import dataclass, field
from typing import Optional, Dict, Any

import httpx

logger = logging.getLogger(__name__)

FLY_API_URL = "https://api.machines.dev/v1"


@dataclass
class FlyConfig:
    """Fly.io Machines configuration."""
    app_name: str = "mission-control-agents"
    image: str = "registry.fly.io/mission-control-agent:latest"
    region: str = "iad"
    api_token: Optional[str] = None
    api_url: str = FLY_API_URL
    timeout: float = 30.0
    env: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'FlyConfig':
        return cls(
            app_name=data.get('app_name') or os.environ.get('FLY_APP_NAME', cls.app_name),
            image=data.get('image', cls.image),
            region=data.get('region', cls.region),
            api_token=data.get('api_token') or os.environ.get('FLY_API_TOKEN'),
            api_url=data.get('api_url', FLY_API_URL),
            timeout=float(data.get('timeout', 30.0)),
            env=dict(data.get('env') or {})
        )


class FlyMachinesClient:
    """Spawns and stops one machine per agent."""

    def __init__(self, config: Optional[FlyConfig] = None):
        self.config = config or FlyConfig.from_dict({})

    @property
    def mock_mode(self) -> bool:
        return not self.config.api_token

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.config.api_token}",
            "Content-Type": "application/json",
        }

    def _machines_url(self) -> str:
        return f"{self.config.api_url}/apps/{self.config.app_name}/machines"

    def spawn_machine(self, agent_id: str, agent_name: str) -> str:
        """Boot a machine running the agent runner. Returns the machine id."""
        if self.mock_mode:
            machine_id = f"mock_machine_id_{uuid.uuid4().hex[:8]}"
            logger.warning(f"FLY_API_TOKEN not set, mock machine {machine_id} for {agent_name}")
            return machine_id

        payload = {
            "name": f"agent-{agent_name.lower()}-{uuid.uuid4().hex[:6]}",
            "region": self.config.region,
            "config": {
                "image": self.config.image,
                "env": {
                    **self.config.env,
                    "AGENT_NAME": agent_name,
                    "AGENT_ID": agent_id,
                },
                "guest": {
                    "cpu_kind": "shared",
                    "cpus": 1,
                    "memory_mb": 256,
                },
            },
        }
        response = httpx.post(
            self._machines_url(),
            headers=self._headers(),
            json=payload,
            timeout=self.config.timeout
        )
        response.raise_for_status()
        machine_id = response.json()["id"]
        logger.info(f"Spawned machine {machine_id} for agent {agent_name}")
        return machine_id

    def stop_machine(self, machine_id: str) -> None:
        """Stop and delete a machine."""
        if self.mock_mode:
            logger.info(f"Mock stop of machine {machine_id}")
            return

        response = httpx.delete(
            f"{self._machines_url()}/{machine_id}",
            headers=self._headers(),
            params={"force": "true"},
            timeout=self.config.timeout
        )
        if response.status_code == 404:
            logger.warning(f"Machine {machine_id} already gone")
            return
        response.raise_for_status()
        logger.info(f"Stopped machine {machine_id}")
