"""
ScyllaDB credentials from HashiCorp Vault.

The rebuild service reads its database credentials from a KV v2 secret so they
never appear in configuration files or the environment of long-lived hosts.
"""

import logging
import os
from typing import Dict, Optional

import hvac
from hvac.exceptions import InvalidPath, VaultError

from src.index_rebuild.errors import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_SECRET_PATH = "scylla-credentials"


class VaultCredentialProvider:
    """Fetches ScyllaDB credentials from Vault."""

    def __init__(
        self,
        vault_url: Optional[str] = None,
        vault_token: Optional[str] = None,
        mount_point: str = "secret",
        secret_path: str = DEFAULT_SECRET_PATH,
        verify_ssl: bool = True
    ):
        """
        Args:
            vault_url: Vault server URL (defaults to VAULT_ADDR env var)
            vault_token: Vault token (defaults to VAULT_TOKEN env var)
            mount_point: KV v2 mount point
            secret_path: Path of the credentials secret
            verify_ssl: Whether to verify SSL certificates

        Raises:
            ConfigurationError: If Vault is not configured or rejects the token
        """
        self.vault_url = vault_url or os.getenv("VAULT_ADDR")
        vault_token = vault_token or os.getenv("VAULT_TOKEN")
        self.mount_point = mount_point
        self.secret_path = secret_path

        if not self.vault_url:
            raise ConfigurationError("Vault URL must be provided via parameter or VAULT_ADDR environment variable")
        if not vault_token:
            raise ConfigurationError("Vault token must be provided via parameter or VAULT_TOKEN environment variable")

        self.client = hvac.Client(url=self.vault_url, token=vault_token, verify=verify_ssl)
        if not self.client.is_authenticated():
            raise ConfigurationError(f"Failed to authenticate with Vault at {self.vault_url}")

        logger.info(f"Connected to Vault at {self.vault_url}")

    def get_scylla_credentials(self) -> Dict[str, str]:
        """
        Read the ScyllaDB username and password.

        Returns:
            Dict with username and password

        Raises:
            ConfigurationError: If the secret is missing or incomplete
        """
        try:
            response = self.client.secrets.kv.v2.read_secret_version(
                path=self.secret_path,
                mount_point=self.mount_point
            )
        except InvalidPath as e:
            raise ConfigurationError(f"Secret not found at {self.mount_point}/{self.secret_path}") from e
        except VaultError as e:
            raise ConfigurationError(f"Failed to read ScyllaDB credentials from Vault: {e}") from e

        data = (response or {}).get("data", {}).get("data", {})
        if not data.get("username"):
            raise ConfigurationError(f"Secret {self.secret_path} has no username")

        logger.info(f"Retrieved ScyllaDB credentials from {self.secret_path}")
        return {"username": data["username"], "password": data.get("password", "")}


def resolve_scylla_credentials(env: Optional[Dict[str, str]] = None) -> Optional[Dict[str, str]]:
    """
    Find ScyllaDB credentials for the service.

    Vault is used when VAULT_ADDR is set; otherwise SCYLLA_USERNAME and
    SCYLLA_PASSWORD; otherwise None (no authentication).
    """
    env = os.environ if env is None else env

    if env.get("VAULT_ADDR"):
        provider = VaultCredentialProvider(
            vault_url=env["VAULT_ADDR"],
            vault_token=env.get("VAULT_TOKEN"),
            secret_path=env.get("SCYLLA_VAULT_PATH", DEFAULT_SECRET_PATH)
        )
        return provider.get_scylla_credentials()

    if env.get("SCYLLA_USERNAME"):
        return {"username": env["SCYLLA_USERNAME"], "password": env.get("SCYLLA_PASSWORD", "")}

    return None
