import logging
from typing import Any, Dict, List, Optional, Type

from sqlalchemy import Boolean, Column, DateTime, Integer, MetaData, String, Table
from sqlalchemy.orm import registry

from datalayer.domain.entity import Entity, utcnow

logger = logging.getLogger(__name__)

# SQLAlchemy 2.0 pattern: use registry
mapper_registry = registry()
metadata = mapper_registry.metadata


def entity_columns(key_type: Any = Integer) -> List[Column]:
    """
    Columns every entity table carries: identity plus audit fields.

    Integer keys autoincrement; any other key type must be supplied by the
    caller or a server default.
    """
    return [
        Column(
            "id",
            key_type,
            primary_key=True,
            autoincrement=key_type is Integer,
        ),
        Column("created_at", DateTime(timezone=True), nullable=False, default=utcnow),
        Column("modified_at", DateTime(timezone=True), nullable=False, default=utcnow),
        Column("created_by", String(255)),
        Column("modified_by", String(255)),
        Column("disabled", Boolean, nullable=False, default=False),
    ]


def entity_table(
    name: str,
    *columns: Column,
    key_type: Any = Integer,
    table_metadata: Optional[MetaData] = None,
) -> Table:
    """Declare a table holding the entity columns followed by ``columns``."""
    return Table(
        name,
        table_metadata if table_metadata is not None else metadata,
        *entity_columns(key_type),
        *columns,
    )


def map_entity(
    entity_type: Type[Entity],
    table: Table,
    properties: Optional[Dict[str, Any]] = None,
):
    """Map an entity dataclass imperatively onto ``table``."""
    logger.info(f"Mapping {entity_type.__name__} to table {table.name}")
    return mapper_registry.map_imperatively(
        entity_type, table, properties=properties or {}
    )
