"""Marginalia persistence layer."""

from marginalia.store.gateway import PersistenceGateway
from marginalia.store.http import HttpGateway
from marginalia.store.sqlite import SqliteGateway

__all__ = ["HttpGateway", "PersistenceGateway", "SqliteGateway"]
