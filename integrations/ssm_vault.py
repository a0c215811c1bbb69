"""
Secret vault backed by AWS SSM Parameter Store.

Secrets live under ``{prefix}/{org_id}/{key}`` as SecureString parameters.
"""

import logging
from typing import Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

logger = logging.getLogger(__name__)


class SSMVault:
    """Per-organization secrets in SSM."""

    def __init__(self, prefix: str = "/mission-control", region: Optional[str] = None, client=None):
        self.prefix = prefix.rstrip('/')
        self.region = region
        self._client = client

    @property
    def client(self):
        if self._client is None:
            self._client = boto3.client("ssm", region_name=self.region)
        return self._client

    def _name(self, org_id: str, key: str) -> str:
        return f"{self.prefix}/{org_id}/{key}"

    def get_secret(self, org_id: str, key: str) -> Optional[str]:
        """Decrypted value, or None if the parameter does not exist."""
        name = self._name(org_id, key)
        try:
            response = self.client.get_parameter(Name=name, WithDecryption=True)
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") == "ParameterNotFound":
                return None
            raise
        return response.get("Parameter", {}).get("Value")

    def set_secret(self, org_id: str, key: str, value: str) -> None:
        name = self._name(org_id, key)
        self.client.put_parameter(Name=name, Value=value, Type="SecureString", Overwrite=True)
        logger.info(f"Stored secret {key} for org {org_id}")


def load_secret(vault: SSMVault, org_id: str, key: str) -> Optional[str]:
    """Vault lookup for startup paths; failures are logged and yield None."""
    try:
        return vault.get_secret(org_id, key)
    except (BotoCoreError, ClientError) as e:
        logger.warning(f"Vault access failed for {key} in {org_id}: {e}")
        return None
