"""
Persistence interface for positions.
The registry writes through to a repository so a restart can reload
the last known state before reconciling with the ledger.
"""
import copy
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from .models import Position

logger = logging.getLogger(__name__)


class PositionRepository(ABC):
    """Minimal repository over Position records"""

    @abstractmethod
    async def find(self, filter: Optional[Dict[str, Any]] = None) -> List[Position]:
        """All positions whose fields equal every value in filter"""

    @abstractmethod
    async def find_one(self, filter: Dict[str, Any]) -> Optional[Position]:
        """First match or None"""

    @abstractmethod
    async def save(self, entity: Position) -> Position:
        """Insert or replace by id"""

    @abstractmethod
    async def update(self, id: str, patch: Dict[str, Any]) -> Optional[Position]:
        """Apply a partial update; None when the id is unknown"""


class InMemoryPositionRepository(PositionRepository):
    """Dictionary-backed repository, used by default and in tests"""

    def __init__(self):
        self._records: Dict[str, Position] = {}

    @staticmethod
    def _matches(position: Position, filter: Optional[Dict[str, Any]]) -> bool:
        if not filter:
            return True
        return all(getattr(position, key, None) == value for key, value in filter.items())

    async def find(self, filter: Optional[Dict[str, Any]] = None) -> List[Position]:
        return [copy.deepcopy(p) for p in self._records.values() if self._matches(p, filter)]

    async def find_one(self, filter: Dict[str, Any]) -> Optional[Position]:
        for position in self._records.values():
            if self._matches(position, filter):
                return copy.deepcopy(position)
        return None

    async def save(self, entity: Position) -> Position:
        self._records[entity.id] = copy.deepcopy(entity)
        return entity

    async def update(self, id: str, patch: Dict[str, Any]) -> Optional[Position]:
        record = self._records.get(id)
        if record is None:
            logger.debug(f"Repository update for unknown position {id}")
            return None
        for key, value in patch.items():
            if not hasattr(record, key):
                raise AttributeError(f"Position has no field '{key}'")
            setattr(record, key, value)
        return copy.deepcopy(record)
