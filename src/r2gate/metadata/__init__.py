"""Metadata store backends for r2gate."""

from typing import TYPE_CHECKING

from r2gate.metadata.store import MetadataStore

if TYPE_CHECKING:
    from r2gate.config import MetadataConfig

__all__ = [
    "create_metadata_store",
    "MetadataStore",
]


def create_metadata_store(config: "MetadataConfig") -> MetadataStore:
    """Create a metadata store instance based on configuration.

    Args:
        config: The metadata configuration.

    Returns:
        A metadata store instance implementing the MetadataStore protocol.

    Raises:
        ValueError: If the engine is unknown.
    """
    engine = config.engine

    if engine == "sqlite":
        from r2gate.metadata.sqlite import SQLiteMetadataStore

        return SQLiteMetadataStore(config.sqlite.path)

    elif engine == "memory":
        from r2gate.metadata.memory import MemoryMetadataStore

        return MemoryMetadataStore()

    else:
        raise ValueError(f"Unknown metadata engine: {engine}")
