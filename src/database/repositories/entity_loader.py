"""Point reads of ORM entities for pre-image capture."""

from __future__ import annotations

import logging
from typing import Any, Dict, Mapping, Optional, Type

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from audit.tracking.orchestrator import EntityLoader
from database.async_engine import get_async_session_factory

logger = logging.getLogger(__name__)


class OrmEntity:
    """
    TrackableEntity adapter for an ORM instance exposing ``to_state()``.

    The entity type name is explicit rather than read from the mapped class.
    """

    def __init__(self, instance: Any, entity_type: str):
        self._instance = instance
        self._entity_type = entity_type

    @property
    def instance(self) -> Any:
        return self._instance

    def id(self) -> Any:
        return self._instance.id

    def type_name(self) -> str:
        return self._entity_type

    def current_state(self) -> Mapping[str, Any]:
        return self._instance.to_state()

    def __repr__(self) -> str:
        return f"OrmEntity({self._entity_type}:{self._instance.id})"


class SqlAlchemyEntityLoader(EntityLoader):
    """
    Loads the persisted state of registered ORM models by primary key.

    With a session, reads through that session so the capture sees the
    transaction's own earlier writes; without one, uses a short-lived
    session from the factory.
    """

    def __init__(
        self,
        models: Optional[Mapping[str, Type[Any]]] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    ):
        self._models: Dict[str, Type[Any]] = dict(models or {})
        self._session_factory = session_factory

    def register(self, entity_type: str, model: Type[Any]) -> None:
        self._models[entity_type] = model

    async def load_by_id(
        self,
        entity_type: str,
        entity_id: Any,
        session: Any = None,
    ) -> Optional[Mapping[str, Any]]:
        model = self._models.get(entity_type)
        if model is None:
            logger.debug(f"No ORM model registered for {entity_type}")
            return None

        if session is not None:
            instance = await session.get(model, entity_id)
            return instance.to_state() if instance is not None else None

        factory = self._session_factory or get_async_session_factory()
        async with factory() as own_session:
            instance = await own_session.get(model, entity_id)
            return instance.to_state() if instance is not None else None
