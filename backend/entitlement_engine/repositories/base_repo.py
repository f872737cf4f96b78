"""
Base repository scoped to a single user.

All queries issued through a repository filter on the user it was created
for. Repositories never commit; the caller owns the transaction.
"""

import logging
from abc import ABC, abstractmethod
from typing import Generic, Optional, TypeVar

from sqlalchemy.orm import Session

from entitlement_engine.db_base import Base

logger = logging.getLogger(__name__)

# Type variable for repository models
T = TypeVar("T", bound=Base)


class BaseRepository(Generic[T], ABC):
    """
    Base repository with mandatory user_id scoping.
    """

    def __init__(self, db_session: Session, user_id: str):
        """
        Initialize repository with user context.

        Args:
            db_session: SQLAlchemy database session
            user_id: User identifier (from the authenticating gateway or a
                verified webhook, never from request bodies)

        Raises:
            ValueError: If user_id is empty or None
        """
        if not user_id:
            raise ValueError("user_id is required and cannot be empty")

        self.db_session = db_session
        self.user_id = user_id
        self._model_class = self._get_model_class()

    @abstractmethod
    def _get_model_class(self) -> type:
        """Return the SQLAlchemy model class for this repository."""

    def _scoped_query(self):
        return self.db_session.query(self._model_class).filter(
            self._model_class.user_id == self.user_id
        )

    def get(self) -> Optional[T]:
        """Return this user's row, or None."""
        return self._scoped_query().first()

    def add(self, instance: T) -> T:
        """Stage a new row for this user and flush it."""
        if instance.user_id != self.user_id:
            raise ValueError(
                f"Cannot add row for user {instance.user_id} through repository for {self.user_id}"
            )
        self.db_session.add(instance)
        self.db_session.flush()
        return instance


def assign_changed(row, values: dict) -> bool:
    """
    Set only the attributes whose value differs.

    Untouched rows produce no UPDATE, so replays do not bump version or
    updated_at. Returns True if any attribute was set.
    """
    changed = False
    for attr, value in values.items():
        if getattr(row, attr) != value:
            setattr(row, attr, value)
            changed = True
    return changed
