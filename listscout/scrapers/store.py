"""Durable key-value store for collected records and coordinator state.

Two logical documents live in the ``kv_entries`` table: the record list
under ``records`` and the coordinator checkpoint under
``coordinator_state``. Every write is a key-scoped upsert committed on its
own, so the last write per key wins.
"""

from typing import Any, Dict, Iterable, List, Optional

import structlog
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from listscout.models.kv_entry import KeyValueEntry
from listscout.schemas.record import Record, utc_now_iso
from listscout.schemas.state import CoordinatorState
from listscout.scrapers.utils.normalizer import DuplicateMatcher

logger = structlog.get_logger(__name__)

RECORDS_KEY = "records"
STATE_KEY = "coordinator_state"


class RecordStore:
    """Async key-value persistence with record-set helpers.

    The record collection is treated as a set under the duplicate matcher:
    append_record() refuses anything the matcher considers already known.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        matcher: Optional[DuplicateMatcher] = None,
    ):
        """Initialize record store.

        Args:
            session_factory: Factory producing async sessions bound to the store DB
            matcher: Duplicate matcher used by append_record()
        """
        self.session_factory = session_factory
        self.matcher = matcher or DuplicateMatcher()
        self.logger = logger.bind(service="record_store")

    # ========================================================================
    # Generic key-value operations
    # ========================================================================

    async def get(self, key: str, default: Any = None) -> Any:
        async with self.session_factory() as session:
            entry = await session.get(KeyValueEntry, key)
            if entry is None or entry.value is None:
                return default
            return entry.value

    async def set(self, key: str, value: Any) -> None:
        """Replace the value stored under key."""
        async with self.session_factory() as session:
            await session.merge(KeyValueEntry(key=key, value=value))
            await session.commit()

    async def merge(self, key: str, values: Dict[str, Any]) -> Dict[str, Any]:
        """Shallow-merge values into the dict stored under key.

        Returns:
            The merged document as stored
        """
        async with self.session_factory() as session:
            entry = await session.get(KeyValueEntry, key)
            current = dict(entry.value) if entry is not None and isinstance(entry.value, dict) else {}
            current.update(values)
            await session.merge(KeyValueEntry(key=key, value=current))
            await session.commit()
            return current

    async def delete(self, key: str) -> None:
        async with self.session_factory() as session:
            await session.execute(delete(KeyValueEntry).where(KeyValueEntry.key == key))
            await session.commit()

    async def clear(self) -> None:
        """Delete every key."""
        async with self.session_factory() as session:
            await session.execute(delete(KeyValueEntry))
            await session.commit()
        self.logger.info("store_cleared")

    async def keys(self) -> List[str]:
        async with self.session_factory() as session:
            result = await session.execute(select(KeyValueEntry.key).order_by(KeyValueEntry.key))
            return list(result.scalars().all())

    # ========================================================================
    # Records
    # ========================================================================

    async def get_records(self) -> List[Record]:
        raw = await self.get(RECORDS_KEY, default=[])
        records = []
        for item in raw or []:
            try:
                records.append(Record.model_validate(item))
            except ValueError as e:
                self.logger.warning("stored_record_invalid", error=str(e))
        return records

    async def save_records(self, records: Iterable[Record]) -> int:
        """Replace the whole record collection.

        Returns:
            Number of records stored
        """
        payload = [record.to_dict() for record in records]
        await self.set(RECORDS_KEY, payload)
        self.logger.debug("records_saved", count=len(payload))
        return len(payload)

    async def append_record(self, record: Record) -> bool:
        """Append record unless the matcher already knows it.

        Returns:
            True if the record was added, False if it was a duplicate
        """
        records = await self.get_records()
        reason = self.matcher.find_match(record, records)
        if reason:
            self.logger.info("record_duplicate", name=record.name, url=record.url, reason=reason)
            return False

        records.append(record)
        await self.save_records(records)
        self.logger.info("record_added", name=record.name, url=record.url, total=len(records))
        return True

    # ========================================================================
    # Coordinator state
    # ========================================================================

    async def get_state(self) -> Optional[CoordinatorState]:
        raw = await self.get(STATE_KEY)
        if not raw:
            return None
        try:
            return CoordinatorState.model_validate(raw)
        except ValueError as e:
            self.logger.warning("stored_state_invalid", error=str(e))
            return None

    async def save_state(self, state: CoordinatorState) -> CoordinatorState:
        """Persist a checkpoint, stamping last_updated.

        Returns:
            The state as persisted
        """
        state.last_updated = utc_now_iso()
        await self.set(STATE_KEY, state.model_dump(mode="json"))
        return state

    async def clear_state(self) -> None:
        """Drop the coordinator checkpoint, keeping collected records."""
        await self.delete(STATE_KEY)

    async def clear_all(self) -> None:
        """Remove collected records and the coordinator checkpoint."""
        await self.delete(RECORDS_KEY)
        await self.clear_state()
        self.logger.info("records_and_state_cleared")

    async def get_stats(self) -> Dict[str, Any]:
        """Summary of what is stored."""
        records = await self.get_records()
        state = await self.get_state()
        return {
            "total_records": len(records),
            "has_state": state is not None,
            "is_running": bool(state and state.is_running),
            "last_updated": state.last_updated if state else None,
        }
