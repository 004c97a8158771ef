"""Repository for deployment targets."""

from collections.abc import Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from pushdeploy.exceptions.domain import TargetNotFoundError
from pushdeploy.models.pipeline_definition import PipelineDefinition
from pushdeploy.models.target import Target
from pushdeploy.repositories.base import BaseRepository


class TargetRepository(BaseRepository[Target]):
    """Repository for managing targets in the database."""

    def __init__(self, session: AsyncSession):
        super().__init__(session, Target)

    async def get(self, id: str) -> Target:
        target = await self.session.get(Target, id)
        if not target:
            raise TargetNotFoundError(id)
        return target

    async def sync_from_definition(self, definition: PipelineDefinition) -> Sequence[Target]:
        """Create or update every target of a definition.

        Args:
            definition: The validated definition owning the targets.

        Returns:
            The stored targets.
        """
        stored: list[Target] = []
        for spec in definition.targets:
            resolved = Target.resolve(definition, spec)
            existing = await self.get_optional(spec.name)
            if existing:
                data = resolved.model_dump(exclude={"name"})
                stored.append(await self.update(existing, data, exclude_unset=False))
            else:
                stored.append(await self.create(resolved))
        return stored
