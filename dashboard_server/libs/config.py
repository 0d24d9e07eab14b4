import os
from logging import Logger
from typing import Any

import yaml
from simple_logger.logger import get_logger


class Config:
    def __init__(self, logger: Logger | None = None) -> None:
        self.logger = logger or get_logger(name="config")
        self.data_dir: str = os.environ.get("DASHBOARD_SERVER_DATA_DIR", "/home/dashboard/data")
        self.config_path: str = os.path.join(self.data_dir, "config.yaml")
        self.exists()

    def exists(self) -> None:
        if not os.path.isfile(self.config_path):
            raise FileNotFoundError(f"Config file {self.config_path} not found")

    @property
    def root_data(self) -> dict[str, Any]:
        try:
            with open(self.config_path) as fd:
                return yaml.safe_load(fd) or {}
        except FileNotFoundError:
            # Existence is validated in __init__, so this is a race with a deletion.
            self.logger.exception(f"Config file not found: {self.config_path}")
            raise
        except yaml.YAMLError:
            self.logger.exception(f"Config file has invalid YAML syntax: {self.config_path}")
            raise
        except PermissionError:
            self.logger.exception(f"Permission denied reading config file: {self.config_path}")
            raise

    def get_value(self, value: str, return_on_none: Any = None, extra_dict: dict[str, Any] | None = None) -> Any:
        """
        Get value from config

        Supports dot notation for nested values (e.g., "redis.host", "cache.ttl.work-items")

        Order of getting value:
            1. extra_dict (caller supplied overrides)
            2. Root level config file (config.yaml)
        """
        for scope in (extra_dict or {}, self.root_data):
            result = self._get_nested_value(value, scope)
            if result is not None:
                return result

        return return_on_none

    def _get_nested_value(self, key: str, data: dict[str, Any]) -> Any:
        """
        Get value from nested dict using dot notation.

        Args:
            key: Key with optional dot notation (e.g., "redis.host", "azure-devops.project")
            data: Dictionary to search

        Returns:
            Value if found, None otherwise
        """
        current: Any = data

        for k in key.split("."):
            if isinstance(current, dict) and k in current:
                current = current[k]
            else:
                return None

        return current

    def get_webhook_secret(self) -> str | None:
        """
        Get the webhook shared secret.

        The config file takes precedence over the AZURE_DEVOPS_WEBHOOK_SECRET
        environment variable. An empty string is treated as "not configured".
        """
        secret = self.get_value("webhook-secret") or os.environ.get("AZURE_DEVOPS_WEBHOOK_SECRET")
        return secret or None

    def get_azure_devops_pat(self) -> str | None:
        pat = os.environ.get("AZURE_DEVOPS_PAT") or self.get_value("azure-devops.pat")
        if not pat:
            self.logger.warning("Azure DevOps personal access token is not configured")

        return pat or None

    def get_products(self) -> dict[str, dict[str, Any]]:
        return self.root_data.get("products") or {}
