"""Shared utilities: cycle context, logging setup and Vault credentials."""
