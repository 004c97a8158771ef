"""Repository for stored pipeline definitions."""

from sqlalchemy.ext.asyncio import AsyncSession

from pushdeploy.models.base import utcnow
from pushdeploy.models.pipeline_definition import PipelineDefinition, PipelineDefinitionRecord
from pushdeploy.repositories.base import BaseRepository


class PipelineDefinitionRepository(BaseRepository[PipelineDefinitionRecord]):
    """Repository for managing pipeline definitions in the database."""

    def __init__(self, session: AsyncSession):
        super().__init__(session, PipelineDefinitionRecord)

    async def upsert(self, definition: PipelineDefinition) -> PipelineDefinitionRecord:
        """Create or update a stored pipeline definition.

        Args:
            definition: The validated definition.

        Returns:
            The created or updated PipelineDefinitionRecord.
        """
        data = {
            "branches": list(definition.branches),
            "document": definition.model_dump(mode="json"),
            "synced_at": utcnow(),
        }
        existing = await self.get_optional(definition.name)
        if existing:
            return await self.update(existing, data, exclude_unset=False)
        return await self.create(PipelineDefinitionRecord(name=definition.name, **data))
