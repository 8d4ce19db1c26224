"""Relational stores for departments and users."""

import logging

from .base import Criteria, RecordStore
from .memory import InMemoryStore

__all__ = ['Criteria', 'RecordStore', 'InMemoryStore', 'create_store']

logger = logging.getLogger(__name__)


def create_store(database_config):
    """
    Create the store named by the ``database`` configuration section.

    ``url: memory://`` selects the in-process store; any other URL is handed to
    SQLAlchemy.
    """
    url = (database_config or {}).get('url', 'memory://')
    if url == 'memory://':
        logger.warning("Using the in-memory store: records do not outlive this run, so leaver detection "
                       "and no-op reruns need database.url to point at a real database")
        return InMemoryStore()
    from .sql import SQLStore
    return SQLStore(url, pool_size=database_config.get('pool_size', 5),
                    create_schema=database_config.get('create_schema', True))
