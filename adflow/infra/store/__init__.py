from adflow.infra.store.base import Store
from adflow.infra.store.sql_store import SQLStore

__all__ = ["Store", "SQLStore"]
