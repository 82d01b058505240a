"""Persistence gateway and the ordered writer the orchestrator uses."""

from parla.persistence.gateway import (
    InMemoryGateway,
    PersistenceGateway,
    PersistenceWriter,
)

__all__ = ["InMemoryGateway", "PersistenceGateway", "PersistenceWriter"]
