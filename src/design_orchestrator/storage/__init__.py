"""Storage backends for design requests and tasks."""

from design_orchestrator.storage.base import DesignStorage
from design_orchestrator.storage.memory import InMemoryDesignStorage
from design_orchestrator.storage.postgres import PostgresDesignStorage

__all__ = [
    "DesignStorage",
    "InMemoryDesignStorage",
    "PostgresDesignStorage",
]
