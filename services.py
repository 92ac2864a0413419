"""
Order placement and referral rewards
"""
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional

from database import Store
from notifications import NotificationHub
from schemas import CreateOrderPayload, Order, OrderItem, Voucher

logger = logging.getLogger(__name__)

DEFAULT_VOUCHER_EXPIRY_DAYS = 30


class OrderError(Exception):
    """Business rule violation while placing an order."""


class EmptyOrder(OrderError):
    def __init__(self):
        super().__init__("Order must contain items")


class InvalidPaymentMethod(OrderError):
    def __init__(self, method: str):
        super().__init__("Payment method not available")
        self.method = method


class ProductNotFound(OrderError):
    def __init__(self, product_id: int):
        super().__init__(f"Product with ID {product_id} not found")
        self.product_id = product_id


class InsufficientStock(OrderError):
    def __init__(self, product_name: str, available: int, requested: int):
        super().__init__(f"Not enough stock for product {product_name}")
        self.available = available
        self.requested = requested


class SettingsRegistry:
    """Typed read access to the string-valued settings repository."""

    def __init__(self, store: Store):
        self.store = store

    def get(self, key: str) -> Optional[str]:
        setting = self.store.setting(key)
        return setting.value if setting else None

    def get_bool(self, key: str, default: bool = False) -> bool:
        value = self.get(key)
        if value is None:
            return default
        return value == "true"

    def get_int(self, key: str, default: Optional[int] = None) -> Optional[int]:
        value = self.get(key)
        try:
            return int(value) if value is not None else default
        except ValueError:
            return default

    def get_float(self, key: str, default: Optional[float] = None) -> Optional[float]:
        value = self.get(key)
        try:
            return float(value) if value is not None else default
        except ValueError:
            return default

    def payment_enabled(self, method: str) -> bool:
        return self.get_bool(f"PAYMENT_{method.upper()}")


def order_with_items(store: Store, order: Order) -> dict:
    items = []
    for item in store.order_items.find(order_id=order.id):
        product = store.products.get(item.product_id)
        items.append({**item.model_dump(mode="json"), "product": product.model_dump(mode="json") if product else None})
    return {**order.model_dump(mode="json"), "items": items}


def place_order(store: Store, settings: SettingsRegistry, notifier: NotificationHub,
                user_id: int, payload: CreateOrderPayload) -> dict:
    if not payload.items:
        raise EmptyOrder()
    if not settings.payment_enabled(payload.payment_method):
        raise InvalidPaymentMethod(payload.payment_method)

    with store.lock:
        # validate every line before touching stock
        lines = []
        requested = {}
        total = 0.0
        for line in payload.items:
            product = store.products.get(line.product_id)
            if product is None:
                raise ProductNotFound(line.product_id)
            requested[product.id] = requested.get(product.id, 0) + line.quantity
            if product.stock < requested[product.id]:
                raise InsufficientStock(product.name, product.stock, requested[product.id])
            lines.append((product, line.quantity))
            total += product.price * line.quantity

        if payload.voucher_code:
            voucher = store.voucher_by_code(payload.voucher_code)
            if voucher:
                total = max(0.0, total - voucher.discount)
                store.vouchers.update(voucher.id, is_used=True)
            else:
                logger.info("Ignoring unusable voucher %s on order for user %s", payload.voucher_code, user_id)

        order = store.orders.create(Order(
            user_id=user_id,
            status="pending",
            total=round(total, 2),
            shipping_address=payload.shipping_address,
            payment_method=payload.payment_method,
            created_at=datetime.now(timezone.utc),
        ))
        for product, quantity in lines:
            store.order_items.create(OrderItem(
                order_id=order.id, product_id=product.id, quantity=quantity, price=product.price,
            ))
            current = store.products.get(product.id)
            store.products.update(product.id, stock=current.stock - quantity)

        store.clear_cart(user_id)

    logger.info("Order %s placed by user %s, total %.2f", order.id, user_id, order.total)
    notifier.publish(user_id, "order", order_id=order.id, message="Order placed successfully")
    return order_with_items(store, order)


def update_order_status(store: Store, notifier: NotificationHub, order_id: int, status: str) -> Optional[Order]:
    order = store.orders.update(order_id, status=status)
    if order is None:
        return None
    logger.info("Order %s moved to %s", order_id, status)
    notifier.publish(order.user_id, "order", order_id=order.id, message=f"Order status updated to {status}")
    return order


def reward_referrer(store: Store, settings: SettingsRegistry, notifier: NotificationHub,
                    referrer_id: int) -> Optional[Voucher]:
    """Mint a voucher when the referrer's referral count hits a multiple of REFERRAL_COUNT.

    The count is recomputed from all users on every call, so changing
    REFERRAL_COUNT later shifts which counts are rewarded.
    """
    required = settings.get_int("REFERRAL_COUNT")
    amount = settings.get_float("VOUCHER_AMOUNT")
    if required is None or amount is None:
        logger.warning("Referral settings missing, skipping reward for user %s", referrer_id)
        return None
    if required < 1:
        logger.warning("REFERRAL_COUNT=%s is not positive, skipping reward", required)
        return None
    expiry_days = settings.get_int("VOUCHER_EXPIRY_DAYS", DEFAULT_VOUCHER_EXPIRY_DAYS)

    referrals = store.users.find(referred_by=referrer_id)
    if len(referrals) % required != 0:
        return None

    now = datetime.now(timezone.utc)
    voucher = store.vouchers.create(Voucher(
        user_id=referrer_id,
        code=f"REF-{secrets.token_hex(3).upper()}",
        discount=amount,
        is_used=False,
        expires_at=now + timedelta(days=expiry_days),
        created_at=now,
    ))
    logger.info("Minted voucher %s for user %s after %d referrals", voucher.code, referrer_id, len(referrals))
    notifier.publish(
        referrer_id, "referral",
        voucher_code=voucher.code,
        amount=amount,
        message=f"Congratulations! You've earned a voucher worth KSh {amount:g}",
    )
    return voucher
