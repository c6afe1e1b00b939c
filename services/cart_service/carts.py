"""Cart operations. Cart lines hold stock reservations in the ledger."""
import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from shared.errors import (
    InsufficientStock,
    NotFound,
    PromotionErrorReason,
    PromotionInvalid,
    StorefrontError,
)
from shared.money import ZERO, to_money
from services.inventory_service.ledger import StockLedger, UnitRef
from services.inventory_service.models import FulfillmentType, InventoryUnit, Product
from services.promotion_service.evaluator import CartLine, PromotionEvaluator, PromotionResult

from .models import Cart, CartItem, CartPromotion

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CartEntry:
    """A cart line joined with its inventory unit and product."""
    item: CartItem
    unit: InventoryUnit
    product: Product

    @property
    def line(self) -> CartLine:
        return CartLine(
            product_id=self.product.id,
            unit_price=to_money(self.unit.retail_price),
            quantity=self.item.quantity,
            name=self.product.name,
            category_id=self.product.category_id,
        )

    @property
    def line_total(self) -> Decimal:
        return self.line.line_total


class CartManager:
    """Add, change and remove cart lines, keeping their reservations in step."""

    def __init__(self, session: AsyncSession):
        self.session = session
        self.ledger = StockLedger(session)

    async def get_cart(self, cart_id: UUID) -> Cart:
        # The cleanup sweep flips ``processed`` behind the identity map
        cart = await self.session.get(Cart, cart_id, populate_existing=True)
        if cart is None:
            raise NotFound(f"Cart {cart_id} not found", cart_id=str(cart_id))
        return cart

    async def get_or_create_cart(
        self,
        user_id: Optional[UUID] = None,
        session_id: Optional[str] = None,
    ) -> Cart:
        """Return the cart of a user (preferred) or anonymous session, creating it if needed."""
        if user_id is None and not session_id:
            raise StorefrontError("A cart needs a user id or a session id")

        if user_id is not None:
            query = select(Cart).where(Cart.user_id == user_id)
        else:
            query = select(Cart).where(Cart.session_id == session_id)

        result = await self.session.execute(query)
        cart = result.scalar_one_or_none()
        if cart is not None:
            return cart

        cart = Cart(
            user_id=user_id,
            session_id=None if user_id else session_id,
            items=[],
            promotions=[],
        )
        self.session.add(cart)
        await self.session.commit()

        logger.info(f"Created cart {cart.id} (user={user_id}, session={session_id})")
        return cart

    async def add_item(self, cart: Cart, ref: UnitRef, quantity: int) -> CartItem:
        """
        Add ``quantity`` of a unit to the cart.

        Local inventory is reserved or the call fails with InsufficientStock.
        Hybrid units are reserved when stock allows and otherwise go to
        print-on-demand. Print-on-demand units are never reserved.
        """
        if quantity <= 0:
            raise StorefrontError(f"Quantity must be positive, got {quantity}")

        unit = await self.ledger.resolve_unit(ref)
        product = await self._get_product(unit.product_id)

        try:
            reserved = await self._reserve(unit, product, quantity)

            item = next((i for i in cart.items if i.inventory_unit_id == unit.id), None)
            if item is None:
                item = CartItem(
                    product_id=product.id,
                    inventory_unit_id=unit.id,
                    quantity=quantity,
                    reserved_quantity=reserved,
                )
                cart.items.append(item)
            else:
                item.quantity += quantity
                item.reserved_quantity += reserved

            self._touch(cart)
            await self.session.commit()

        except Exception as e:
            logger.error(f"Error adding {unit.sku} to cart {cart.id}: {str(e)}")
            await self.session.rollback()
            raise

        logger.info(
            f"Added {quantity} x {unit.sku} to cart {cart.id} "
            f"(line quantity={item.quantity}, reserved={item.reserved_quantity})"
        )
        return item

    async def update_item_quantity(self, cart: Cart, item_id: UUID, quantity: int) -> Optional[CartItem]:
        """Set a line's quantity; zero or less removes the line."""
        if quantity <= 0:
            await self.remove_item(cart, item_id)
            return None

        item = self._find_item(cart, item_id)
        delta = quantity - item.quantity
        if delta == 0:
            return item

        try:
            if delta > 0:
                unit = await self.ledger.resolve_unit(item.inventory_unit_id)
                product = await self._get_product(item.product_id)
                item.reserved_quantity += await self._reserve(unit, product, delta)
            else:
                excess = item.reserved_quantity - quantity
                if excess > 0:
                    item.reserved_quantity -= await self.ledger.release(item.inventory_unit_id, excess)
                    item.reserved_quantity = min(item.reserved_quantity, quantity)

            item.quantity = quantity
            self._touch(cart)
            await self.session.commit()

        except Exception as e:
            logger.error(f"Error updating line {item_id} of cart {cart.id}: {str(e)}")
            await self.session.rollback()
            raise

        return item

    async def remove_item(self, cart: Cart, item_id: UUID):
        """Remove a line and release whatever it holds."""
        item = self._find_item(cart, item_id)

        try:
            if item.reserved_quantity > 0:
                await self.ledger.release(item.inventory_unit_id, item.reserved_quantity)
            cart.items.remove(item)
            self._touch(cart)
            await self.session.commit()

        except Exception as e:
            logger.error(f"Error removing line {item_id} from cart {cart.id}: {str(e)}")
            await self.session.rollback()
            raise

        logger.info(f"Removed line {item_id} from cart {cart.id}")

    async def clear_cart(self, cart: Cart):
        """Release every reservation and delete the cart."""
        for item in cart.items:
            if item.reserved_quantity > 0:
                await self.ledger.release(item.inventory_unit_id, item.reserved_quantity)

        await self.session.delete(cart)
        await self.session.commit()

        logger.info(f"Cleared cart {cart.id}")

    async def entries(self, cart: Cart) -> List[CartEntry]:
        """Cart lines joined with their units and products."""
        result = await self.session.execute(
            select(CartItem, InventoryUnit, Product)
            .join(InventoryUnit, CartItem.inventory_unit_id == InventoryUnit.id)
            .join(Product, CartItem.product_id == Product.id)
            .where(CartItem.cart_id == cart.id)
            .order_by(CartItem.created_at)
        )
        return [CartEntry(item=item, unit=unit, product=product) for item, unit, product in result.all()]

    async def lines(self, cart: Cart) -> List[CartLine]:
        return [entry.line for entry in await self.entries(cart)]

    async def subtotal(self, cart: Cart) -> Decimal:
        return to_money(sum((line.line_total for line in await self.lines(cart)), ZERO))

    async def apply_promotion(
        self,
        cart: Cart,
        code: str,
        user_id: Optional[UUID] = None,
        user_email: Optional[str] = None,
    ) -> PromotionResult:
        """
        Validate a coupon against the cart and attach it.

        An order carries a single promotion, so a newly applied promotion
        replaces any other one on the cart. Re-applying the same promotion
        fails with ALREADY_APPLIED.
        """
        lines = await self.lines(cart)
        evaluator = PromotionEvaluator(self.session)
        result = await evaluator.evaluate(
            lines,
            code=code,
            user_id=user_id or cart.user_id,
            user_email=user_email,
            applied_promotion_ids=[p.promotion_id for p in cart.promotions],
        )

        try:
            for existing in list(cart.promotions):
                cart.promotions.remove(existing)
            cart.promotions.append(
                CartPromotion(
                    promotion_id=result.promotion_id,
                    coupon_code=result.coupon_code,
                    name=result.name,
                    discount=result.discount,
                )
            )
            self._touch(cart)
            await self.session.commit()

        except IntegrityError:
            await self.session.rollback()
            raise PromotionInvalid(
                PromotionErrorReason.ALREADY_APPLIED,
                "This coupon has already been applied to your cart",
                promotion_id=str(result.promotion_id),
            )

        logger.info(f"Applied promotion {result.promotion_id} to cart {cart.id}: {result.message}")
        return result

    async def remove_promotion(self, cart: Cart, promotion_id: UUID):
        applied = next((p for p in cart.promotions if p.promotion_id == promotion_id), None)
        if applied is None:
            raise NotFound(
                f"Promotion {promotion_id} is not applied to cart {cart.id}",
                promotion_id=str(promotion_id),
            )

        cart.promotions.remove(applied)
        self._touch(cart)
        await self.session.commit()

    async def _reserve(self, unit: InventoryUnit, product: Product, quantity: int) -> int:
        """Reserve per the product's fulfillment type. Returns the amount reserved."""
        fulfillment_type = FulfillmentType(product.fulfillment_type)

        if fulfillment_type == FulfillmentType.PRINTIFY_POD:
            return 0

        if fulfillment_type == FulfillmentType.HYBRID:
            try:
                await self.ledger.reserve(unit.id, quantity)
            except InsufficientStock:
                logger.info(f"{unit.sku} short on local stock, will be printed on demand")
                return 0
            return quantity

        await self.ledger.reserve(unit.id, quantity)
        return quantity

    async def _get_product(self, product_id: UUID) -> Product:
        product = await self.session.get(Product, product_id)
        if product is None:
            raise NotFound(f"Product {product_id} not found", product_id=str(product_id))
        return product

    def _find_item(self, cart: Cart, item_id: UUID) -> CartItem:
        item = next((i for i in cart.items if i.id == item_id), None)
        if item is None:
            raise NotFound(f"Cart item {item_id} not found", cart_item_id=str(item_id))
        return item

    @staticmethod
    def _touch(cart: Cart):
        # Line changes do not dirty the cart row, so bump it explicitly;
        # a cart in use is no longer eligible for the reservation sweep
        cart.updated_at = datetime.utcnow()
        cart.processed = False
