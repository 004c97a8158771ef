"""Generic repository over one SQLModel table."""

from collections.abc import Sequence
from typing import Any, Generic, TypeAlias, TypeVar

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql import Select
from sqlmodel import SQLModel, select

from pushdeploy.exceptions.domain import EntityNotFoundError

ModelT = TypeVar("ModelT", bound=SQLModel)
FilterValueT: TypeAlias = str | int | float | bool


class BaseRepository(Generic[ModelT]):
    """Primary-key lookups, listing and write-through commits for one model.

    Every write commits immediately: repositories are used with short-lived
    sessions, one per unit of work.

    Args:
        session: Database session
        model_class: SQLModel table class this repository operates on
    """

    def __init__(self, session: AsyncSession, model_class: type[ModelT]):
        self.session = session
        self.model_class = model_class

    async def get(self, id: Any) -> ModelT:
        """Get entity by primary key.

        Raises:
            EntityNotFoundError: If no row has that key
        """
        entity = await self.get_optional(id)
        if entity is None:
            raise EntityNotFoundError(f"{self.model_class.__name__} '{id}' not found")
        return entity

    async def get_optional(self, id: Any) -> ModelT | None:
        return await self.session.get(self.model_class, id)

    async def list_all(self, **filters: FilterValueT) -> Sequence[ModelT]:
        """List rows whose columns equal the given values.

        Unknown filter names are ignored.
        """
        statement = select(self.model_class)
        for field, value in filters.items():
            column = getattr(self.model_class, field, None)
            if column is not None:
                statement = statement.where(column == value)
        return await self.execute_query(statement)

    async def create(self, entity: ModelT) -> ModelT:
        self.session.add(entity)
        await self.session.commit()
        await self.session.refresh(entity)
        return entity

    async def update(
        self, entity: ModelT, update_data: dict[str, Any], exclude_unset: bool = True
    ) -> ModelT:
        """Set fields of ``entity`` and commit.

        Args:
            entity: Persistent entity
            update_data: New field values; unknown fields are ignored
            exclude_unset: Skip ``None`` values instead of writing them
        """
        for field, value in update_data.items():
            if exclude_unset and value is None:
                continue
            if hasattr(entity, field):
                setattr(entity, field, value)

        await self.session.commit()
        await self.session.refresh(entity)
        return entity

    async def execute_query(self, query: Select) -> Sequence[ModelT]:
        result = await self.session.execute(query)
        return result.scalars().all()
