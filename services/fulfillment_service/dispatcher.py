"""Fulfillment dispatch: route each paid order line to local stock or Printify."""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from shared.errors import FulfillmentFailed, InvalidTransition, NotFound
from shared.events import FulfillmentFailedEvent
from shared.outbox import save_event_to_outbox
from services.inventory_service.ledger import StockLedger
from services.inventory_service.models import FulfillmentType, InventoryUnit, Product
from services.order_service.models import FulfillmentStatus, Order, OrderItem, OrderStatus
from services.order_service.orchestrator import OrderOrchestrator

from .printify import PrintifyClient, PrintifyOrderStatus, to_printify_order

logger = logging.getLogger(__name__)

LOCAL = "local"
PRINTIFY = "printify"
SKIPPED = "skipped"


@dataclass(frozen=True)
class FailedItem:
    order_item_id: UUID
    name: str
    error: str

    def to_dict(self) -> Dict[str, Any]:
        return {"order_item_id": str(self.order_item_id), "name": self.name, "error": self.error}


@dataclass(frozen=True)
class ItemOutcome:
    order_item_id: UUID
    route: str
    printify_order_id: Optional[str] = None


@dataclass(frozen=True)
class FulfillmentResult:
    order_id: UUID
    success: bool
    fulfillment_status: FulfillmentStatus
    fulfilled: List[ItemOutcome] = field(default_factory=list)
    failed_items: List[FailedItem] = field(default_factory=list)
    printify_order_id: Optional[str] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class _OrderContext:
    order_id: UUID
    correlation_id: UUID
    shipping_address: Dict[str, Any]
    recipient: Optional[str]


class FulfillmentDispatcher:
    """
    Fulfills paid orders line by line.

    Each line runs in its own session and transaction, so a failing line
    never undoes one that succeeded. Lines carry their own progress
    (``stock_committed``, ``printify_order_id``), which makes reprocessing
    an order safe.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        printify: Optional[PrintifyClient] = None,
        concurrency: int = 4,
    ):
        self.session_factory = session_factory
        self.printify = printify
        self.concurrency = concurrency

    async def process_order(self, order_id: UUID) -> FulfillmentResult:
        async with self.session_factory() as session:
            order = await _get_order(session, order_id)
            if order.status != OrderStatus.PROCESSING.value:
                raise InvalidTransition(
                    f"Order {order.id} is {order.status}; only paid orders are fulfilled",
                    order_id=str(order.id),
                )

            context = _OrderContext(
                order_id=order.id,
                correlation_id=order.correlation_id,
                shipping_address=dict(order.shipping_address),
                recipient=await OrderOrchestrator(session).recipient(order),
            )
            items = [(item.id, item.name) for item in order.items]

        logger.info(f"Fulfilling order {order_id}: {len(items)} items")

        semaphore = asyncio.Semaphore(self.concurrency)

        async def run(item_id: UUID) -> ItemOutcome:
            async with semaphore:
                return await self._fulfill_item(context, item_id)

        results = await asyncio.gather(
            *(run(item_id) for item_id, _ in items),
            return_exceptions=True,
        )

        fulfilled: List[ItemOutcome] = []
        failed: List[FailedItem] = []
        for (item_id, name), result in zip(items, results):
            if isinstance(result, BaseException):
                logger.error(f"Fulfillment of {name} ({item_id}) failed: {str(result)}")
                failed.append(FailedItem(order_item_id=item_id, name=name, error=str(result)))
            else:
                fulfilled.append(result)

        return await self._record_outcome(context, fulfilled, failed)

    async def retry_failed_fulfillment(self, order_id: UUID) -> FulfillmentResult:
        """Reset an order to PENDING and reprocess every line."""
        async with self.session_factory() as session:
            order = await _get_order(session, order_id)
            order.fulfillment_status = FulfillmentStatus.PENDING.value
            for item in order.items:
                if item.fulfillment_status == FulfillmentStatus.FAILED.value:
                    item.fulfillment_status = FulfillmentStatus.PENDING.value
                    item.fulfillment_error = None
            await session.commit()

        logger.info(f"Retrying fulfillment for order {order_id}")
        return await self.process_order(order_id)

    async def get_fulfillment_status(self, order_id: UUID) -> Dict[str, Any]:
        async with self.session_factory() as session:
            order = await _get_order(session, order_id)
            return {
                "order_id": order.id,
                "status": order.fulfillment_status,
                "printify_order_id": order.printify_order_id,
                "tracking_number": order.tracking_number,
                "tracking_url": order.tracking_url,
                "carrier": order.carrier,
                "items": [
                    {
                        "order_item_id": item.id,
                        "name": item.name,
                        "status": item.fulfillment_status,
                        "stock_committed": item.stock_committed,
                        "printify_order_id": item.printify_order_id,
                        "error": item.fulfillment_error,
                    }
                    for item in order.items
                ],
            }

    async def update_tracking_info(
        self,
        order_id: UUID,
        tracking_number: str,
        tracking_url: Optional[str] = None,
        carrier: Optional[str] = None,
    ):
        """Store tracking data; a PROCESSING order also moves to SHIPPED."""
        async with self.session_factory() as session:
            orchestrator = OrderOrchestrator(session)
            order = await orchestrator.get_order(order_id)

            if order.status == OrderStatus.PROCESSING.value:
                await orchestrator.update_order_status(
                    order.id,
                    OrderStatus.SHIPPED,
                    tracking_number=tracking_number,
                    tracking_url=tracking_url,
                    carrier=carrier,
                )
            else:
                order.tracking_number = tracking_number
                order.tracking_url = tracking_url
                order.carrier = carrier
                order.fulfillment_status = FulfillmentStatus.SHIPPED.value
                await session.commit()

        logger.info(f"Updated tracking info for order {order_id}: {tracking_number}")

    async def sync_provider_status(self, order_id: UUID) -> Optional[PrintifyOrderStatus]:
        """Poll Printify and record tracking once the provider has shipped."""
        async with self.session_factory() as session:
            order = await _get_order(session, order_id)
            printify_order_id = order.printify_order_id

        if not printify_order_id:
            return None
        if self.printify is None:
            raise FulfillmentFailed("Printify is not configured")

        status = await self.printify.get_order_status(printify_order_id)
        logger.info(f"Printify order {printify_order_id} for order {order_id} is {status.status}")

        if status.shipped and status.tracking_number:
            await self.update_tracking_info(
                order_id,
                tracking_number=status.tracking_number,
                tracking_url=status.tracking_url,
                carrier=status.carrier,
            )
        return status

    async def get_fulfillment_stats(
        self,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """Counts of paid orders by fulfillment route and outcome."""
        async with self.session_factory() as session:
            query = (
                select(Order.id, Order.fulfillment_status, Product.fulfillment_type)
                .join(OrderItem, OrderItem.order_id == Order.id)
                .join(Product, Product.id == OrderItem.product_id)
                .where(Order.paid_at.is_not(None))
            )
            if start_date:
                query = query.where(Order.created_at >= start_date)
            if end_date:
                query = query.where(Order.created_at <= end_date)

            rows = (await session.execute(query)).all()

        orders: Dict[UUID, Dict[str, Any]] = {}
        for order_id, status, fulfillment_type in rows:
            entry = orders.setdefault(order_id, {"status": status, "types": set()})
            entry["types"].add(fulfillment_type)

        stats = {"total_orders": len(orders), "local": 0, "printify": 0, "hybrid": 0, "failed": 0}
        for entry in orders.values():
            if entry["status"] == FulfillmentStatus.FAILED.value:
                stats["failed"] += 1
            elif FulfillmentType.PRINTIFY_POD.value in entry["types"]:
                stats["printify"] += 1
            elif FulfillmentType.HYBRID.value in entry["types"]:
                stats["hybrid"] += 1
            else:
                stats["local"] += 1

        total = stats["total_orders"]
        stats["success_rate"] = round((total - stats["failed"]) / total * 100, 2) if total else 0.0
        return stats

    async def _fulfill_item(self, context: _OrderContext, item_id: UUID) -> ItemOutcome:
        async with self.session_factory() as session:
            try:
                item = await session.get(OrderItem, item_id)
                unit = await session.get(InventoryUnit, item.inventory_unit_id)
                product = await session.get(Product, item.product_id)
                fulfillment_type = FulfillmentType(product.fulfillment_type)

                if fulfillment_type == FulfillmentType.LOCAL_INVENTORY:
                    outcome = await self._commit_local(session, item)

                elif fulfillment_type == FulfillmentType.PRINTIFY_POD:
                    outcome = await self._submit_to_printify(session, context, item, unit, product)

                elif item.stock_committed:
                    outcome = ItemOutcome(order_item_id=item.id, route=SKIPPED)

                elif item.printify_order_id:
                    outcome = ItemOutcome(
                        order_item_id=item.id,
                        route=SKIPPED,
                        printify_order_id=item.printify_order_id,
                    )

                # The line's own reservation counts toward what it may take locally
                elif unit.available_stock + item.reserved_quantity >= item.quantity:
                    outcome = await self._commit_local(session, item)

                else:
                    logger.info(
                        f"HYBRID: insufficient local stock for {item.name} "
                        f"(available={unit.available_stock}, requested={item.quantity}), "
                        "falling back to Printify"
                    )
                    if item.reserved_quantity > 0:
                        await StockLedger(session).release(item.inventory_unit_id, item.reserved_quantity)
                        item.reserved_quantity = 0
                    outcome = await self._submit_to_printify(session, context, item, unit, product)

                item.fulfillment_status = FulfillmentStatus.PROCESSING.value
                item.fulfillment_error = None
                await session.commit()
                return outcome

            except Exception:
                await session.rollback()
                raise

    async def _commit_local(self, session: AsyncSession, item: OrderItem) -> ItemOutcome:
        # Claim the line first: a line committed by an earlier run is left alone
        claimed = await session.execute(
            update(OrderItem)
            .where(OrderItem.id == item.id, OrderItem.stock_committed.is_(False))
            .values(stock_committed=True)
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount != 1:
            logger.info(f"LOCAL_INVENTORY: stock for {item.name} already committed")
            return ItemOutcome(order_item_id=item.id, route=SKIPPED)

        await StockLedger(session).commit(
            item.inventory_unit_id,
            item.quantity,
            reserved=item.reserved_quantity,
        )
        item.reserved_quantity = 0
        await session.flush()
        await session.refresh(item)

        logger.info(f"LOCAL_INVENTORY: committed {item.quantity} x {item.name}")
        return ItemOutcome(order_item_id=item.id, route=LOCAL)

    async def _submit_to_printify(
        self,
        session: AsyncSession,
        context: _OrderContext,
        item: OrderItem,
        unit: InventoryUnit,
        product: Product,
    ) -> ItemOutcome:
        if item.printify_order_id:
            logger.info(f"PRINTIFY_POD: {item.name} already submitted as {item.printify_order_id}")
            return ItemOutcome(
                order_item_id=item.id,
                route=SKIPPED,
                printify_order_id=item.printify_order_id,
            )

        if not unit.printify_variant_id:
            raise FulfillmentFailed(f"Product {item.name} is not configured for Printify fulfillment")
        if self.printify is None:
            raise FulfillmentFailed("Printify is not configured")

        order_data = to_printify_order(
            str(context.order_id),
            context.shipping_address,
            context.recipient,
            [
                {
                    "printify_product_id": product.printify_product_id,
                    "printify_variant_id": unit.printify_variant_id,
                    "quantity": item.quantity,
                }
            ],
        )
        result = await self.printify.submit_order(order_data)
        printify_order_id = str(result["id"])

        # Recorded in its own commit: a retry must see the external order even if the line fails later
        item.printify_order_id = printify_order_id
        await session.execute(
            update(Order)
            .where(Order.id == context.order_id)
            .values(printify_order_id=printify_order_id)
            .execution_options(synchronize_session=False)
        )
        try:
            await session.commit()
        except Exception:
            logger.error(
                f"PRINTIFY_POD: Printify order {printify_order_id} for {item.name} "
                "was created but could not be recorded",
                exc_info=True,
            )
            raise

        logger.info(f"PRINTIFY_POD: submitted {item.name} as Printify order {printify_order_id}")
        return ItemOutcome(order_item_id=item.id, route=PRINTIFY, printify_order_id=printify_order_id)

    async def _record_outcome(
        self,
        context: _OrderContext,
        fulfilled: List[ItemOutcome],
        failed: List[FailedItem],
    ) -> FulfillmentResult:
        status = FulfillmentStatus.FAILED if failed else FulfillmentStatus.PROCESSING

        async with self.session_factory() as session:
            try:
                for failure in failed:
                    await session.execute(
                        update(OrderItem)
                        .where(OrderItem.id == failure.order_item_id)
                        .values(
                            fulfillment_status=FulfillmentStatus.FAILED.value,
                            fulfillment_error=failure.error,
                        )
                    )

                await session.execute(
                    update(Order)
                    .where(Order.id == context.order_id)
                    .values(fulfillment_status=status.value, updated_at=datetime.utcnow())
                )

                if failed:
                    await save_event_to_outbox(
                        session,
                        FulfillmentFailedEvent(
                            aggregate_id=context.order_id,
                            correlation_id=context.correlation_id,
                            order_id=context.order_id,
                            failed_items=[failure.to_dict() for failure in failed],
                        ),
                    )

                await session.commit()

            except Exception as e:
                logger.error(f"Error recording fulfillment of order {context.order_id}: {str(e)}", exc_info=True)
                await session.rollback()
                raise

        printify_order_id = next((o.printify_order_id for o in fulfilled if o.printify_order_id), None)

        if failed:
            logger.error(
                f"Fulfillment of order {context.order_id}: "
                f"{len(failed)} of {len(failed) + len(fulfilled)} items failed"
            )
            return FulfillmentResult(
                order_id=context.order_id,
                success=False,
                fulfillment_status=status,
                fulfilled=fulfilled,
                failed_items=failed,
                printify_order_id=printify_order_id,
                error=f"Failed to fulfill {len(failed)} out of {len(failed) + len(fulfilled)} items",
            )

        logger.info(f"All items fulfilled for order {context.order_id}")
        return FulfillmentResult(
            order_id=context.order_id,
            success=True,
            fulfillment_status=status,
            fulfilled=fulfilled,
            printify_order_id=printify_order_id,
        )


async def _get_order(session: AsyncSession, order_id: UUID) -> Order:
    order = await session.get(Order, order_id)
    if order is None:
        raise NotFound(f"Order {order_id} not found", order_id=str(order_id))
    return order
