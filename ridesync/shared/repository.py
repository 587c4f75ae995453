"""
Base repository shared by feature repositories.

Usage:
    class RideRepository(BaseRepository[Ride]):
        def __init__(self, db: AsyncSession):
            super().__init__(db, Ride)

        async def get_by_garmin_id(self, garmin_id: str) -> Ride | None:
            return await self.get_by(garmin_activity_id=garmin_id)
"""

from typing import TypeVar, Generic, Type
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

T = TypeVar("T")


class BaseRepository(Generic[T]):
    """Lookups and flush-on-write helpers over one mapped class."""

    def __init__(self, db: AsyncSession, model: Type[T]):
        self.db = db
        self.model = model

    async def get_by_id(self, id: str) -> T | None:
        return await self.db.get(self.model, id)

    async def get_by(self, **filters) -> T | None:
        """
        First row whose columns equal the given values.

        Args:
            **filters: Column name-value pairs

        Returns:
            Matching entity or None
        """
        query = select(self.model)
        for column, value in filters.items():
            query = query.where(getattr(self.model, column) == value)
        result = await self.db.execute(query)
        return result.scalars().first()

    async def create(self, **values) -> T:
        """Add a row and flush so defaults (id, timestamps) are populated."""
        entity = self.model(**values)
        self.db.add(entity)
        await self.db.flush()
        await self.db.refresh(entity)
        return entity

    async def update(self, entity: T, **values) -> T:
        for column, value in values.items():
            setattr(entity, column, value)
        await self.db.flush()
        await self.db.refresh(entity)
        return entity


def dialect_insert(db: AsyncSession, model):
    """
    INSERT construct for the session's dialect (supports ON CONFLICT).

    Args:
        db: Session bound to a sqlite or postgresql engine
        model: Mapped class or table

    Returns:
        Dialect-specific Insert
    """
    dialect = db.bind.dialect.name
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        raise NotImplementedError(f"Upsert not supported for dialect: {dialect}")
    return insert(model)
