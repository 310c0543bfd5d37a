# services/bucket_registry.py
"""
Bucket registry: the catalog of buckets and the active-bucket pointer.

Each bucket is a directory under DATA_DIR/buckets holding its own SQLite
database. The catalog (DATA_DIR/catalog.db) records which buckets exist and
which one is active. Deleting the active bucket clears the pointer in the
same catalog transaction that forgets the bucket; deleting the last bucket
either does the same ("clear_active") or is refused ("refuse").
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import AsyncGenerator, Dict, List, Optional, Set

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from core.domain import BucketRef, SessionContext
from core.exceptions import (BucketExistsError, BucketNotFoundError,
                             InvalidBucketNameError, LastBucketError,
                             StorageError)
from database.catalog import (REGISTRY_STATE_ID, BucketEntity,
                              RegistryStateEntity, init_catalog_schema)
from database.session import create_session_factory, create_sqlite_engine, get_session
from infrastructure.bucket_store import BucketStore, remove_bucket_directory
from config import settings
from utils.common import sanitize_bucket_name

logger = logging.getLogger(settings.LOGGER_NAME)

DELETE_POLICIES = ("clear_active", "refuse")


def _to_ref(entity: BucketEntity) -> BucketRef:
    return BucketRef(
        name=entity.name,  # type: ignore
        path=entity.path,  # type: ignore
        created_at=entity.created_at,  # type: ignore
    )


def _same_bucket(a: BucketRef, b: BucketRef) -> bool:
    """True when both refs name one incarnation of a bucket (SQLite drops tzinfo)."""
    return (
        a.name == b.name
        and a.path == b.path
        and a.created_at.replace(tzinfo=None) == b.created_at.replace(tzinfo=None)
    )


class BucketRegistry:
    def __init__(
        self,
        data_dir: Optional[str] = None,
        delete_last_policy: Optional[str] = None,
    ):
        self.data_dir = Path(data_dir or settings.DATA_DIR)
        self.buckets_dir = self.data_dir / "buckets"
        self.delete_last_policy = delete_last_policy or settings.REGISTRY_DELETE_LAST_POLICY
        if self.delete_last_policy not in DELETE_POLICIES:
            raise ValueError(
                f"Unknown delete policy '{self.delete_last_policy}'. Expected one of {DELETE_POLICIES}"
            )

        self._engine: Optional[AsyncEngine] = None
        self._session_factory: Optional[async_sessionmaker] = None
        self._stores: Dict[str, BucketStore] = {}
        self._catalog_lock = asyncio.Lock()
        self._stores_lock = asyncio.Lock()
        self._deleting: Set[str] = set()  # names whose directory is being removed

    # ============= Lifecycle =============

    async def initialize(self) -> None:
        """Create the data directory and catalog if missing. Safe to call twice."""
        if self._engine is not None:
            return
        self.buckets_dir.mkdir(parents=True, exist_ok=True)
        engine = create_sqlite_engine(str(self.data_dir / settings.CATALOG_DB_NAME))
        try:
            await init_catalog_schema(engine)
            factory = create_session_factory(engine)
            async with get_session(factory) as session:
                if await session.get(RegistryStateEntity, REGISTRY_STATE_ID) is None:
                    session.add(RegistryStateEntity(id=REGISTRY_STATE_ID, active_bucket=None))
        except SQLAlchemyError as e:
            await engine.dispose()
            raise StorageError(f"Cannot open bucket catalog in {self.data_dir}: {e}") from e

        self._engine = engine
        self._session_factory = factory
        logger.info(f"[REGISTRY] Catalog ready at {self.data_dir}")

    async def close(self) -> None:
        async with self._stores_lock:
            for store in self._stores.values():
                await store.close()
            self._stores.clear()
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._session_factory = None

    def _factory(self) -> async_sessionmaker:
        if self._session_factory is None:
            raise StorageError("Bucket registry used before initialize()")
        return self._session_factory

    @asynccontextmanager
    async def _catalog(self) -> AsyncGenerator[AsyncSession, None]:
        """Catalog transaction; SQL failures surface as StorageError after rollback."""
        try:
            async with get_session(self._factory()) as session:
                yield session
        except SQLAlchemyError as e:
            logger.error(f"[REGISTRY] Catalog transaction rolled back: {e}")
            raise StorageError(f"Bucket catalog update failed: {e}") from e

    async def _state(self, session: AsyncSession) -> RegistryStateEntity:
        state = await session.get(RegistryStateEntity, REGISTRY_STATE_ID)
        if state is None:
            state = RegistryStateEntity(id=REGISTRY_STATE_ID, active_bucket=None)
            session.add(state)
        return state

    # ============= Catalog =============

    @staticmethod
    def normalize_name(name: str) -> str:
        clean = sanitize_bucket_name(name)
        if not clean:
            raise InvalidBucketNameError(name)
        return clean

    async def create(self, name: str) -> BucketRef:
        """
        Register a new, empty bucket and create its storage.

        Raises:
            InvalidBucketNameError: name has no usable characters
            BucketExistsError: a bucket with the sanitized name exists
        """
        clean = self.normalize_name(name)
        path = self.buckets_dir / clean

        async with self._catalog_lock:
            async with self._catalog() as session:
                if await session.get(BucketEntity, clean) is not None or path.exists():
                    raise BucketExistsError(clean)
                path.mkdir(parents=True)
                entity = BucketEntity(name=clean, path=str(path), created_at=datetime.now(timezone.utc))
                session.add(entity)
                ref = _to_ref(entity)

        # Materialize the database so an empty bucket is a real, openable bucket
        await self.open_store(ref)
        logger.info(f"[REGISTRY] Created bucket '{clean}'")
        return ref

    async def list_buckets(self) -> List[BucketRef]:
        async with self._catalog() as session:
            result = await session.execute(select(BucketEntity).order_by(BucketEntity.name))
            return [_to_ref(e) for e in result.scalars().all()]

    async def list_names(self) -> Set[str]:
        return {b.name for b in await self.list_buckets()}

    async def get(self, name: str) -> BucketRef:
        clean = self.normalize_name(name)
        async with self._catalog() as session:
            entity = await session.get(BucketEntity, clean)
            if entity is None:
                raise BucketNotFoundError(clean)
            return _to_ref(entity)

    # ============= Active Pointer =============

    async def use(self, name: str) -> SessionContext:
        """Make a bucket active and return a session targeting it."""
        clean = self.normalize_name(name)
        async with self._catalog_lock:
            async with self._catalog() as session:
                entity = await session.get(BucketEntity, clean)
                if entity is None:
                    raise BucketNotFoundError(clean)
                state = await self._state(session)
                state.active_bucket = clean  # type: ignore
                ref = _to_ref(entity)
        logger.info(f"[REGISTRY] Active bucket is now '{clean}'")
        return SessionContext.for_bucket(ref)

    async def active(self) -> Optional[BucketRef]:
        """
        The active bucket, or None.

        A pointer to a bucket whose directory has vanished is cleared on read.
        """
        async with self._catalog_lock:
            async with self._catalog() as session:
                state = await self._state(session)
                name = state.active_bucket
                if name is None:
                    return None
                entity = await session.get(BucketEntity, name)
                if entity is not None and Path(entity.path).is_dir():  # type: ignore
                    return _to_ref(entity)
                logger.warning(f"[REGISTRY] Active bucket '{name}' no longer exists; clearing pointer")
                state.active_bucket = None  # type: ignore
                return None

    async def session(self) -> SessionContext:
        """Session bound to whatever bucket is active right now (possibly none)."""
        return SessionContext(bucket=await self.active())

    # ============= Deletion =============

    async def delete(self, name: str) -> None:
        """
        Delete a bucket with all documents, chunks and indices.

        The name is marked as deleting before its store is closed, and stays
        marked until the directory is gone, so no concurrent open_store can
        cache an engine on the doomed database.

        Raises:
            BucketNotFoundError: no such bucket
            LastBucketError: it is the only bucket and the policy is "refuse"
        """
        clean = self.normalize_name(name)
        async with self._catalog_lock:
            try:
                async with self._catalog() as session:
                    entity = await session.get(BucketEntity, clean)
                    if entity is None:
                        raise BucketNotFoundError(clean)
                    total = (await session.execute(select(func.count()).select_from(BucketEntity))).scalar_one()
                    if total == 1 and self.delete_last_policy == "refuse":
                        raise LastBucketError(clean)

                    path = Path(entity.path)  # type: ignore
                    await self._drop_store(clean)

                    state = await self._state(session)
                    if state.active_bucket == clean:
                        state.active_bucket = None  # type: ignore
                        logger.info(f"[REGISTRY] Cleared active pointer (was '{clean}')")
                    await session.delete(entity)

                # Catalog committed: the bucket no longer exists for anyone
                await remove_bucket_directory(path)
            finally:
                async with self._stores_lock:
                    self._deleting.discard(clean)
        logger.info(f"[REGISTRY] Deleted bucket '{clean}'")

    # ============= Stores =============

    async def open_store(self, bucket: BucketRef) -> BucketStore:
        """
        Cached store for a bucket; one instance per bucket keeps writes serialized.

        The ref must still match the catalog entry: a ref to a deleted bucket,
        or to an earlier bucket of the same name, raises BucketNotFoundError.
        """
        async with self._stores_lock:
            if bucket.name in self._deleting:
                raise BucketNotFoundError(bucket.name)
            async with self._catalog() as session:
                entity = await session.get(BucketEntity, bucket.name)
                current = _to_ref(entity) if entity is not None else None
            if current is None or not _same_bucket(current, bucket):
                raise BucketNotFoundError(bucket.name)

            store = self._stores.get(bucket.name)
            if store is not None and store.is_open and _same_bucket(store.bucket, current):
                return store
            if store is not None:
                await store.close()
            store = await BucketStore.open(current)
            self._stores[bucket.name] = store
            return store

    async def _drop_store(self, name: str) -> None:
        async with self._stores_lock:
            self._deleting.add(name)
            store = self._stores.pop(name, None)
        if store is not None:
            await store.close()
