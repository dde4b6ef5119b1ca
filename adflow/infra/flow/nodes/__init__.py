"""Built-in node kinds."""

from adflow.infra.flow.nodes.base import BaseNode
from adflow.infra.flow.nodes.execute_sql import ConnectionSettings, DatasourceResolver, ExecuteSqlNode
from adflow.infra.flow.nodes.file_transfer import FileTransferNode
from adflow.infra.flow.nodes.remote import HostResolver, HostSettings, RemoteFileClient

__all__ = [
    "BaseNode",
    "ExecuteSqlNode",
    "FileTransferNode",
    "ConnectionSettings",
    "DatasourceResolver",
    "HostResolver",
    "HostSettings",
    "RemoteFileClient",
]
