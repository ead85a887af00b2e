"""Connector registry."""

from __future__ import annotations

import importlib

from elba_connectors.base_connector import BaseConnector
from elba_connectors.config import ConnectorsConfig

CONNECTOR_REGISTRY: dict[str, tuple[str, str, str]] = {
    # name -> (config_attr, module_path, class_name)
    "github": ("github", "elba_connectors.connectors.github", "GitHubConnector"),
    "monday": ("monday", "elba_connectors.connectors.monday", "MondayConnector"),
    "dropbox": ("dropbox", "elba_connectors.connectors.dropbox", "DropboxConnector"),
}


def get_connector(name: str, config: ConnectorsConfig) -> BaseConnector:
    entry = CONNECTOR_REGISTRY.get(name)
    if not entry:
        raise ValueError(f"Unknown connector {name!r}")

    config_attr, module_path, class_name = entry
    module = importlib.import_module(module_path)
    cls = getattr(module, class_name)
    return cls(getattr(config, config_attr))
