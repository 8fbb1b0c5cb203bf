"""
copytrader Core: Position Registry

Authoritative in-memory index of ACTIVE positions, kept as a cache over the
durable position store. Every change is persisted first and only then
reflected in the index.
"""

import asyncio
import uuid
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Tuple, TypeVar
import logging

from core.exceptions import RepositoryInconsistency
from core.position_state import (
    Position,
    PositionStatus,
    TradeMode,
    TrailingStop,
    utcnow,
)

logger = logging.getLogger(__name__)

IMMUTABLE_FIELDS = frozenset({"id", "asset", "venue", "status", "created_at"})

T = TypeVar("T")


class PositionRegistry:
    """
    Single source of truth for "is this mint currently open".

    Responsibilities:
    - Rebuild the active index from the store at startup
    - Create, update and close positions (store first, then index)
    - Serialize all writes behind one lock; store I/O runs off the event loop
    """

    def __init__(self, store):
        """
        Args:
            store: Position repository (create/get/update/list_active)
        """
        self.store = store
        self._active: Dict[str, Position] = {}
        self._write_lock = asyncio.Lock()

    def load(self) -> int:
        """
        Rebuild the active index from durable storage.

        Errors propagate: a registry that cannot read its store must not start.
        """
        records = self.store.list_active()
        self._active = {}
        for record in records:
            position = Position.from_dict(record)
            self._active[position.id] = position
        logger.info(f"Loaded {len(self._active)} active position(s) from store")
        return len(self._active)

    async def create(
        self,
        *,
        asset: str,
        venue: str,
        trade_mode: TradeMode,
        quantity: Decimal,
        entry_price: Decimal,
        buy_amount: Decimal = Decimal("0"),
        origin_signature: Optional[str] = None,
        stop_loss_pct: Optional[Decimal] = None,
        take_profit_pct: Optional[Decimal] = None,
        trailing: Optional[TrailingStop] = None,
    ) -> Position:
        now = utcnow()
        position = Position(
            id=str(uuid.uuid4()),
            asset=asset,
            venue=venue,
            trade_mode=trade_mode,
            quantity=quantity,
            entry_price=entry_price,
            buy_amount=buy_amount,
            stop_loss_pct=stop_loss_pct,
            take_profit_pct=take_profit_pct,
            trailing=trailing,
            origin_signature=origin_signature,
            created_at=now,
            updated_at=now,
        )
        async with self._write_lock:
            await asyncio.to_thread(self.store.create, position.to_dict())
            self._active[position.id] = position
        logger.info(
            f"Opened position {position.id}: {asset} qty={quantity} "
            f"entry={entry_price} mode={trade_mode.value} venue={venue}"
        )
        return position

    def get(self, position_id: str) -> Optional[Position]:
        position = self._active.get(position_id)
        if position is not None:
            return position
        record = self.store.get(position_id)
        return Position.from_dict(record) if record else None

    def find_active_by_asset(self, asset: str, mode: Optional[TradeMode] = None) -> Optional[Position]:
        for position in self._active.values():
            if position.asset != asset:
                continue
            if mode is not None and position.trade_mode != mode:
                continue
            return position
        return None

    def list_active(self) -> List[Position]:
        return list(self._active.values())

    def __len__(self) -> int:
        return len(self._active)

    async def update(self, position_id: str, **changes: Any) -> Optional[Position]:
        """
        Persist a partial update and refresh the index.

        Returns:
            Updated position, or None if it was closed in the meantime

        Raises:
            RepositoryInconsistency: If the id is unknown to the store
            ValueError: If an immutable field is targeted
        """
        self._check_mutable(changes)
        async with self._write_lock:
            current = await self._current(position_id, "update")
            if current is None:
                return None
            return await self._write(current, changes)

    async def apply(
        self,
        position_id: str,
        fn: Callable[[Position], Tuple[Dict[str, Any], T]],
    ) -> Tuple[Optional[Position], Optional[T]]:
        """
        Read-modify-write a position under the write lock.

        ``fn`` receives the latest indexed position and returns the changes
        to persist plus a value handed back to the caller. Concurrent
        callers therefore never overwrite each other with stale state.

        Returns:
            (updated position, fn's value), or (None, None) if the position
            was closed in the meantime
        """
        async with self._write_lock:
            current = await self._current(position_id, "update")
            if current is None:
                return None, None
            changes, value = fn(current)
            self._check_mutable(changes)
            return await self._write(current, changes), value

    @staticmethod
    def _check_mutable(changes: Dict[str, Any]) -> None:
        forbidden = IMMUTABLE_FIELDS.intersection(changes)
        if forbidden:
            raise ValueError(f"Cannot update immutable field(s): {', '.join(sorted(forbidden))}")

    async def _current(self, position_id: str, operation: str) -> Optional[Position]:
        # Caller holds the write lock.
        current = self._active.get(position_id)
        if current is not None:
            return current
        if await asyncio.to_thread(self.store.get, position_id) is None:
            raise RepositoryInconsistency(position_id, operation)
        logger.debug(f"Dropping {operation} for closed position {position_id}")
        return None

    async def _write(self, current: Position, changes: Dict[str, Any]) -> Position:
        updated = current.with_changes(updated_at=utcnow(), **changes)
        payload = {key: value for key, value in updated.to_dict().items() if key in changes}
        payload["updated_at"] = updated.updated_at.isoformat()
        try:
            await asyncio.to_thread(self.store.update, current.id, payload)
        except KeyError:
            raise RepositoryInconsistency(current.id, "update")
        self._active[current.id] = updated
        return updated

    async def close(self, position_id: str, reason: str) -> Position:
        """
        Mark a position CLOSED and drop it from the active index.

        Closing an already closed position is a no-op.
        """
        async with self._write_lock:
            current = self._active.get(position_id)
            if current is None:
                record = await asyncio.to_thread(self.store.get, position_id)
                if record is None:
                    raise RepositoryInconsistency(position_id, "close")
                logger.debug(f"Position {position_id} already closed")
                return Position.from_dict(record)

            now = utcnow()
            closed = current.with_changes(
                status=PositionStatus.CLOSED,
                closed_at=now,
                updated_at=now,
                close_reason=reason,
            )
            try:
                await asyncio.to_thread(self.store.update, position_id, {
                    "status": closed.status.value,
                    "closed_at": now.isoformat(),
                    "updated_at": now.isoformat(),
                    "close_reason": reason,
                })
            except KeyError:
                raise RepositoryInconsistency(position_id, "close")
            del self._active[position_id]

        logger.info(f"Closed position {position_id} ({current.asset}) reason={reason}")
        return closed
