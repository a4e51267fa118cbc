from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(kw_only=True, eq=False)
class Entity:
    """
    Base record shape shared by every persisted entity.

    ``id`` is assigned by the store on insert and never changes afterwards.
    ``disabled`` is a plain soft-exclusion flag; queries do not filter on it.
    Equality is identity based, the ORM identity map guarantees a single
    instance per row within a session.
    """

    id: Any = None
    created_at: datetime = field(default_factory=utcnow)
    modified_at: datetime = field(default_factory=utcnow)
    created_by: Optional[str] = None
    modified_by: Optional[str] = None
    disabled: bool = False

    def touch(self, user: Optional[str] = None) -> None:
        """Refresh the modification audit fields."""
        self.modified_at = utcnow()
        if user is not None:
            self.modified_by = user
