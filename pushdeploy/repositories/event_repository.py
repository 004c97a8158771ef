"""Repository for trigger delivery audit records."""

from collections.abc import Sequence

from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import col, select

from pushdeploy.models.event import EventRecord
from pushdeploy.repositories.base import BaseRepository


class EventRepository(BaseRepository[EventRecord]):
    """Append-only store of accepted and rejected trigger deliveries."""

    def __init__(self, session: AsyncSession):
        super().__init__(session, EventRecord)

    async def record(self, record: EventRecord) -> EventRecord:
        return await self.create(record)

    async def list_recent(
        self, limit: int = 50, accepted: bool | None = None
    ) -> Sequence[EventRecord]:
        """Most recent deliveries first, optionally filtered by outcome."""
        statement = select(EventRecord)
        if accepted is not None:
            statement = statement.where(col(EventRecord.accepted) == accepted)
        statement = statement.order_by(col(EventRecord.received_at).desc()).limit(limit)
        return await self.execute_query(statement)
