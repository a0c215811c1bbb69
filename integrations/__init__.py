"""
Mission Control Integrations Module

External services behind the fleet: Fly.io machines for agent containers
and AWS SSM for per-organization secrets.
"""

from .fly_client import FlyMachinesClient, FlyConfig
from .ssm_vault import SSMVault

__all__ = ['FlyMachinesClient', 'FlyConfig', 'SSMVault']
