"""Stock ledger: two-phase reserve/commit accounting over inventory units.

Stock is reserved when a cart line is added and committed (on-hand quantity
decremented) only once the order is paid. Every counter change is a single
conditional UPDATE so concurrent requests cannot oversell or drive a counter
negative; no read-modify-write happens in Python.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Union
from uuid import UUID

from sqlalchemy import case, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from shared.errors import InsufficientStock, NotFound
from shared.events import StockLowEvent
from shared.outbox import save_event_to_outbox
from services.cart_service.models import Cart, CartItem

from .models import InventoryUnit

logger = logging.getLogger(__name__)

UnitRef = Union[UUID, str]


@dataclass(frozen=True)
class Availability:
    """Result of an availability check."""
    inventory_unit_id: UUID
    sku: str
    available_stock: int
    can_fulfill: bool


@dataclass(frozen=True)
class CleanupReport:
    """Outcome of one reservation cleanup sweep."""
    carts_processed: int
    units_released: int


class StockLedger:
    """Reserve, release and commit stock within the caller's session.

    The ledger never commits: callers own the transaction so that stock
    changes land atomically with the cart/order rows they belong to.
    ``cleanup_expired_reservations`` is the exception, it commits per cart.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def resolve_unit(self, ref: UnitRef) -> InventoryUnit:
        """Find a unit by primary id, falling back to its SKU."""
        unit = None
        unit_id = _as_uuid(ref)
        if unit_id is not None:
            unit = await self.session.get(InventoryUnit, unit_id, populate_existing=True)

        if unit is None:
            result = await self.session.execute(
                select(InventoryUnit)
                .where(InventoryUnit.sku == str(ref))
                .execution_options(populate_existing=True)
            )
            unit = result.scalar_one_or_none()

        if unit is None:
            raise NotFound(f"Inventory unit {ref} not found", inventory_unit=str(ref))

        return unit

    async def check_availability(self, ref: UnitRef, quantity: int) -> Availability:
        unit = await self.resolve_unit(ref)
        return Availability(
            inventory_unit_id=unit.id,
            sku=unit.sku,
            available_stock=unit.available_stock,
            can_fulfill=unit.available_stock >= quantity,
        )

    async def reserve(self, ref: UnitRef, quantity: int) -> InventoryUnit:
        """Hold ``quantity`` units for a cart. All or nothing."""
        _require_positive(quantity)
        availability = await self.check_availability(ref, quantity)
        if not availability.can_fulfill:
            raise _insufficient(availability.sku, quantity, availability.available_stock)

        # Availability is re-checked by the WHERE clause: the read above can be stale
        result = await self.session.execute(
            update(InventoryUnit)
            .where(
                InventoryUnit.id == availability.inventory_unit_id,
                InventoryUnit.quantity - InventoryUnit.reserved_stock >= quantity,
            )
            .values(reserved_stock=InventoryUnit.reserved_stock + quantity)
        )
        unit = await self.resolve_unit(availability.inventory_unit_id)
        if result.rowcount != 1:
            raise _insufficient(unit.sku, quantity, unit.available_stock)

        logger.info(f"Reserved {quantity} of {unit.sku} (reserved={unit.reserved_stock})")
        return unit

    async def release(self, ref: UnitRef, quantity: int) -> int:
        """Drop up to ``quantity`` reserved units. Returns how many were released."""
        if quantity <= 0:
            return 0

        unit = await self.resolve_unit(ref)
        released = min(quantity, unit.reserved_stock)

        await self.session.execute(
            update(InventoryUnit)
            .where(InventoryUnit.id == unit.id)
            .values(
                reserved_stock=case(
                    (InventoryUnit.reserved_stock >= quantity, InventoryUnit.reserved_stock - quantity),
                    else_=0,
                )
            )
        )
        await self.session.refresh(unit)

        logger.info(f"Released {released} of {unit.sku} (reserved={unit.reserved_stock})")
        return released

    async def commit(
        self,
        ref: UnitRef,
        quantity: int,
        reserved: Optional[int] = None,
    ) -> InventoryUnit:
        """
        Turn a sale into an on-hand decrement.

        Decrements ``quantity`` by ``quantity`` and releases up to ``reserved``
        (default: ``quantity``) of the held reservation, in one statement.
        The WHERE clause keeps the remaining quantity at or above both zero and
        the reservations still held by other carts. Raises InsufficientStock
        when it does not; the caller rolls back.
        """
        _require_positive(quantity)
        to_release = quantity if reserved is None else max(0, min(reserved, quantity))

        unit = await self.resolve_unit(ref)
        result = await self.session.execute(
            update(InventoryUnit)
            .where(
                InventoryUnit.id == unit.id,
                InventoryUnit.quantity >= quantity,
                InventoryUnit.quantity - quantity >= InventoryUnit.reserved_stock - to_release,
            )
            .values(
                quantity=InventoryUnit.quantity - quantity,
                reserved_stock=case(
                    (InventoryUnit.reserved_stock >= to_release, InventoryUnit.reserved_stock - to_release),
                    else_=0,
                ),
            )
        )
        await self.session.refresh(unit)

        if result.rowcount != 1:
            held_elsewhere = max(0, unit.reserved_stock - to_release)
            raise _insufficient(unit.sku, quantity, max(0, unit.quantity - held_elsewhere))

        logger.info(
            f"Committed {quantity} of {unit.sku} "
            f"(quantity={unit.quantity}, reserved={unit.reserved_stock})"
        )

        if unit.available_stock <= unit.low_stock_threshold:
            await save_event_to_outbox(
                self.session,
                StockLowEvent(
                    aggregate_id=unit.id,
                    inventory_unit_id=unit.id,
                    sku=unit.sku,
                    available_stock=unit.available_stock,
                    low_stock_threshold=unit.low_stock_threshold,
                ),
            )
            logger.warning(f"Low stock for {unit.sku}: {unit.available_stock} available")

        return unit

    async def cleanup_expired_reservations(self, max_age_hours: float) -> CleanupReport:
        """
        Release reservations held by abandoned carts.

        Each cart is handled in its own transaction that first claims the
        cart (``processed`` false -> true). A cart claimed by a concurrent
        sweep is skipped, so stock is released at most once.
        """
        cutoff = datetime.utcnow() - timedelta(hours=max_age_hours)
        result = await self.session.execute(
            select(Cart.id).where(Cart.processed.is_(False), Cart.updated_at < cutoff)
        )
        cart_ids = result.scalars().all()
        await self.session.commit()

        carts_processed = 0
        units_released = 0

        for cart_id in cart_ids:
            try:
                claimed = await self.session.execute(
                    update(Cart)
                    .where(Cart.id == cart_id, Cart.processed.is_(False))
                    .values(processed=True)
                    .execution_options(synchronize_session=False)
                )
                if claimed.rowcount != 1:
                    await self.session.rollback()
                    continue

                items = await self.session.execute(
                    select(CartItem).where(
                        CartItem.cart_id == cart_id,
                        CartItem.reserved_quantity > 0,
                    )
                )
                for item in items.scalars().all():
                    units_released += await self.release(item.inventory_unit_id, item.reserved_quantity)
                    item.reserved_quantity = 0

                await self.session.commit()
                carts_processed += 1

            except Exception as e:
                logger.error(f"Error releasing reservations for cart {cart_id}: {str(e)}", exc_info=True)
                await self.session.rollback()
                raise

        logger.info(
            f"Reservation cleanup: {carts_processed} carts processed, "
            f"{units_released} units released"
        )
        return CleanupReport(carts_processed=carts_processed, units_released=units_released)


def _as_uuid(ref: UnitRef) -> Optional[UUID]:
    if isinstance(ref, UUID):
        return ref
    try:
        return UUID(str(ref))
    except ValueError:
        return None


def _require_positive(quantity: int):
    if quantity <= 0:
        raise ValueError(f"Quantity must be positive, got {quantity}")


def _insufficient(sku: str, requested: int, available: int) -> InsufficientStock:
    return InsufficientStock(
        f"Only {available} of {sku} available, {requested} requested",
        requested=requested,
        available=available,
        sku=sku,
    )
