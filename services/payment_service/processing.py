"""Payment processing: open, capture and reconcile payments for orders."""
import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from shared.errors import InvalidTransition, NotFound, PaymentFailed
from shared.events import PaymentCapturedEvent, PaymentFailedEvent
from shared.money import to_money
from shared.outbox import save_event_to_outbox
from services.order_service.models import Order, OrderStatus

from .gateway import PaymentGateway
from .models import Payment, PaymentStatus

logger = logging.getLogger(__name__)

CAPTURE_COMPLETED = "PAYMENT.CAPTURE.COMPLETED"
CAPTURE_DENIED = "PAYMENT.CAPTURE.DENIED"


class PaymentProcessor:
    """
    Owns the Payment row of each order.

    ``payment.captured`` is written to the outbox only by the call that moves
    a payment to COMPLETED, whether that is the buyer-facing capture or the
    gateway webhook, so the order is confirmed once.
    """

    def __init__(self, session: AsyncSession, gateway: PaymentGateway, currency: str = "USD"):
        self.session = session
        self.gateway = gateway
        self.currency = currency

    async def start_payment(self, order_id: UUID, provider: str = "paypal") -> Payment:
        """Open a gateway payment for a pending order (reused if already open)."""
        order = await self._get_order(order_id)
        if order.status != OrderStatus.PENDING.value:
            raise InvalidTransition(
                f"Order is already {order.status.lower()}. "
                "Cannot create payment for a non-pending order.",
                order_id=str(order.id),
            )

        payment = await self.get_payment(order.id)
        if payment is not None and payment.status == PaymentStatus.COMPLETED.value:
            return payment
        if payment is not None and payment.status == PaymentStatus.PENDING.value and payment.external_payment_id:
            logger.info(f"Reusing open payment {payment.external_payment_id} for order {order.id}")
            return payment

        external_id = await self.gateway.create_order(to_money(order.total), str(order.id))

        if payment is None:
            payment = Payment(order_id=order.id, provider=provider, currency=self.currency)
            self.session.add(payment)

        payment.external_payment_id = external_id
        payment.amount = to_money(order.total)
        payment.status = PaymentStatus.PENDING.value
        payment.error_message = None
        await self.session.commit()

        logger.info(f"Started payment {external_id} for order {order.id} ({payment.amount})")
        return payment

    async def capture(self, order_id: UUID) -> Payment:
        """Capture the buyer-approved payment of an order. Idempotent once completed."""
        payment = await self.get_payment(order_id)
        if payment is None or not payment.external_payment_id:
            raise NotFound(f"No open payment for order {order_id}", order_id=str(order_id))

        if payment.status == PaymentStatus.COMPLETED.value:
            logger.info(f"Payment for order {order_id} already captured")
            return payment

        try:
            result = await self.gateway.capture_payment(payment.external_payment_id)
        except PaymentFailed as e:
            await self._fail(payment, e.message, error_code=str(e.details.get("http_status") or "capture_failed"))
            raise

        if not result.completed:
            message = f"Capture returned status {result.status}"
            await self._fail(payment, message, error_code=result.status)
            raise PaymentFailed(message, order_id=str(order_id), status=result.status)

        await self._complete(
            payment,
            external_payment_id=result.external_payment_id,
            payer_email=result.payer_email,
            raw=result.raw,
        )
        return payment

    async def handle_webhook(self, payload: Dict[str, Any]) -> Optional[Payment]:
        """
        Apply a gateway webhook.

        ``PAYMENT.CAPTURE.COMPLETED`` with ``custom_id`` set to the order id
        completes the payment; redeliveries are no-ops. Denied captures mark
        the payment failed. Other event types are ignored.
        """
        event_type = payload.get("event_type")
        resource = payload.get("resource") or {}

        if event_type not in (CAPTURE_COMPLETED, CAPTURE_DENIED):
            logger.info(f"Ignoring webhook event {event_type}")
            return None

        order_id = _parse_order_id(resource.get("custom_id"))
        if order_id is None:
            logger.error(f"Webhook {event_type} without a usable custom_id: {resource.get('custom_id')}")
            return None

        order = await self._get_order(order_id)
        order_total = to_money(order.total)
        payment = await self._get_or_create_payment(order_id, order_total, resource)

        if event_type == CAPTURE_DENIED:
            await self._fail(payment, "Capture denied by gateway", error_code="DENIED")
            return payment

        amount = (resource.get("amount") or {}).get("value")
        if amount is not None and to_money(Decimal(amount)) != order_total:
            logger.warning(f"Webhook amount {amount} differs from order {order_id} total {order_total}")

        await self._complete(
            payment,
            external_payment_id=resource.get("id") or payment.external_payment_id,
            payer_email=(resource.get("payer") or {}).get("email_address"),
            raw=payload,
        )
        return payment

    async def get_payment(self, order_id: UUID) -> Optional[Payment]:
        result = await self.session.execute(
            select(Payment)
            .where(Payment.order_id == order_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _complete(
        self,
        payment: Payment,
        external_payment_id: Optional[str],
        payer_email: Optional[str],
        raw: Dict[str, Any],
    ):
        result = await self.session.execute(
            update(Payment)
            .where(Payment.id == payment.id, Payment.status != PaymentStatus.COMPLETED.value)
            .values(
                status=PaymentStatus.COMPLETED.value,
                external_payment_id=external_payment_id,
                payer_email=payer_email,
                gateway_response=raw,
                error_message=None,
                processed_at=datetime.utcnow(),
            )
            .execution_options(synchronize_session=False)
        )

        if result.rowcount == 1:
            order = await self.session.get(Order, payment.order_id)
            await save_event_to_outbox(
                self.session,
                PaymentCapturedEvent(
                    aggregate_id=payment.order_id,
                    correlation_id=order.correlation_id,
                    order_id=payment.order_id,
                    payment_id=payment.id,
                    external_payment_id=external_payment_id,
                    amount=to_money(payment.amount),
                    payer_email=payer_email,
                ),
            )
            logger.info(f"Payment {payment.id} for order {payment.order_id} completed")
        else:
            logger.info(f"Payment {payment.id} for order {payment.order_id} was already completed")

        await self.session.commit()
        await self.session.refresh(payment)

    async def _fail(self, payment: Payment, reason: str, error_code: Optional[str] = None):
        # A completed payment never moves back; late DENIED webhooks are dropped
        result = await self.session.execute(
            update(Payment)
            .where(Payment.id == payment.id, Payment.status != PaymentStatus.COMPLETED.value)
            .values(
                status=PaymentStatus.FAILED.value,
                error_message=reason,
                processed_at=datetime.utcnow(),
            )
            .execution_options(synchronize_session=False)
        )

        if result.rowcount == 1:
            order = await self.session.get(Order, payment.order_id)
            await save_event_to_outbox(
                self.session,
                PaymentFailedEvent(
                    aggregate_id=payment.order_id,
                    correlation_id=order.correlation_id,
                    order_id=payment.order_id,
                    reason=reason,
                    error_code=error_code,
                ),
            )
            logger.error(f"Payment for order {payment.order_id} failed: {reason}")
        else:
            logger.warning(
                f"Ignoring failure for payment {payment.id} of order {payment.order_id}: "
                f"already completed ({reason})"
            )

        await self.session.commit()
        await self.session.refresh(payment)

    async def _get_or_create_payment(
        self,
        order_id: UUID,
        amount: Decimal,
        resource: Dict[str, Any],
    ) -> Payment:
        payment = await self.get_payment(order_id)
        if payment is not None:
            return payment

        # The webhook can beat the capture call that would have opened the row
        payment = Payment(
            order_id=order_id,
            amount=amount,
            currency=self.currency,
            external_payment_id=resource.get("id"),
        )
        self.session.add(payment)
        try:
            await self.session.commit()
        except IntegrityError:
            await self.session.rollback()
            payment = await self.get_payment(order_id)
        return payment

    async def _get_order(self, order_id: UUID) -> Order:
        order = await self.session.get(Order, order_id)
        if order is None:
            raise NotFound(f"Order {order_id} not found", order_id=str(order_id))
        return order


def _parse_order_id(value: Optional[str]) -> Optional[UUID]:
    if not value:
        return None
    try:
        return UUID(str(value))
    except ValueError:
        return None
