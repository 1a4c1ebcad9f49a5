"""Datasource connectors."""

from vizql_copilot.connector.base import ConnectorTimeout, DatasourceConnector

__all__ = ["ConnectorTimeout", "DatasourceConnector"]
