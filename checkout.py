import logging
import secrets
import time
from typing import Optional

from errors import InvalidParams
from models import Order, Plan, add_one_month, utcnow
from providers import PaymentHandle, ProviderRouter
from store import OrderStore

logger = logging.getLogger(__name__)

PLANS = {p.value for p in Plan}


def gen_order_no() -> str:
    """毫秒时间戳 + 6 位随机数"""
    return f"{int(time.time() * 1000)}{secrets.randbelow(10 ** 6):06d}"


def _positive_int(name: str, value) -> int:
    if isinstance(value, bool):
        raise InvalidParams(f"invalid {name}")
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise InvalidParams(f"invalid {name}")
    if number != value and str(number) != str(value):
        raise InvalidParams(f"invalid {name}")
    if number <= 0:
        raise InvalidParams(f"invalid {name}")
    return number


class CheckoutDispatcher:
    def __init__(self, store: OrderStore, router: ProviderRouter):
        self.store = store
        self.router = router

    def create_checkout(self, user_email: str, price_id: Optional[str], plan: str,
                        amount, currency: str, credits,
                        return_url: Optional[str] = None) -> PaymentHandle:
        if not user_email:
            raise InvalidParams("missing user")
        if not currency or not isinstance(currency, str):
            raise InvalidParams("invalid params")
        if plan not in PLANS:
            raise InvalidParams("invalid plan")
        amount = _positive_int("amount", amount)
        credits = _positive_int("credits", credits)
        currency = currency.lower()

        provider = self.router.for_currency(currency)
        if not provider.supports_plan(plan):
            raise InvalidParams(f"plan {plan} is not available for {currency}")

        now = utcnow()
        order = self.store.insert_order(Order(
            order_no=gen_order_no(),
            user_email=user_email,
            amount=amount,
            currency=currency,
            plan=plan,
            credits=credits,
            provider=provider.name,
            created_at=now,
            expired_at=add_one_month(now),
        ))
        logger.info("[Checkout] Created order %s for %s via %s",
                    order.order_no, user_email, provider.name)

        # 渠道失败时订单保持 pending，不会发放积分
        handle = provider.create_payment(order, price_id=price_id, return_url=return_url)

        if handle.session_id:
            self.store.set_session_id(order.order_no, handle.session_id)
            logger.info("[Checkout] Order %s bound to session %s",
                        order.order_no, handle.session_id)
        return handle
