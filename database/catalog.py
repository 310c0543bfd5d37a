# database/catalog.py
"""Registry catalog: which buckets exist and which one is active."""
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Integer, String
from sqlalchemy.ext.asyncio import AsyncEngine
from sqlalchemy.orm import declarative_base

CatalogBase = declarative_base()

# --- SQLAlchemy Models ---

class BucketEntity(CatalogBase):
    __tablename__ = "buckets"
    name = Column(String, primary_key=True)
    path = Column(String, nullable=False, unique=True)
    created_at = Column(DateTime, default=lambda: datetime.now(timezone.utc))

class RegistryStateEntity(CatalogBase):
    """Single row (id=1) holding the active-bucket pointer."""
    __tablename__ = "registry_state"
    id = Column(Integer, primary_key=True)
    active_bucket = Column(String, nullable=True)


REGISTRY_STATE_ID = 1


async def init_catalog_schema(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(CatalogBase.metadata.create_all)
