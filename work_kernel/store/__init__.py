"""Versioned entity store: the persistence contract and its SQLAlchemy implementation."""

from work_kernel.store.protocol import VersionedEntityStore
from work_kernel.store.sqlalchemy_store import SqlAlchemyVersionedStore

__all__ = ["VersionedEntityStore", "SqlAlchemyVersionedStore"]
