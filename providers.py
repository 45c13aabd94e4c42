import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Mapping, Optional

import requests
import stripe

from config import Settings
from errors import InvalidParams, PaymentProviderError
from models import Order, Plan
from sign import NATIVE_PAY_SCHEME

logger = logging.getLogger(__name__)

PRODUCT_NAME = "aicover credits plan"
CENT = Decimal("0.01")


def format_yuan(amount: int) -> str:
    """分 -> 元，两位小数，如 2025 -> '20.25'"""
    return str((Decimal(amount) / 100).quantize(CENT))


def parse_yuan(money: str) -> int:
    """元 -> 分。非法金额或不足一分的金额抛出 ValueError。"""
    try:
        value = Decimal(str(money).strip())
    except InvalidOperation:
        raise ValueError(f"bad money: {money!r}")
    if not value.is_finite():
        raise ValueError(f"bad money: {money!r}")
    cents = value * 100
    if cents != cents.to_integral_value():
        raise ValueError(f"bad money: {money!r}")
    return int(cents)


@dataclass
class PaymentHandle:
    payment_type: str
    order_no: str
    session_id: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        body = {"payment_type": self.payment_type, "order_no": self.order_no}
        if self.session_id is not None:
            body["session_id"] = self.session_id
        body.update(self.data)
        return body


class PaymentProvider(ABC):
    name: str = ""

    def supports_plan(self, plan: str) -> bool:
        return True

    @abstractmethod
    def create_payment(self, order: Order, price_id: Optional[str] = None,
                       return_url: Optional[str] = None) -> PaymentHandle:
        """Issue exactly one provider request for ``order``; raise PaymentProviderError on failure."""


class WechatPayProvider(PaymentProvider):
    """YunGouOS 微信扫码支付（nativePay）"""

    name = "wechat"

    def __init__(self, settings: Settings, session: Optional[requests.Session] = None):
        self.settings = settings
        self.http = session or requests.Session()

    def supports_plan(self, plan: str) -> bool:
        # 扫码支付不支持周期扣款
        return plan == Plan.ONE_TIME.value

    def build_request(self, order: Order, return_url: Optional[str] = None) -> Dict[str, str]:
        base = self.settings.base_url
        params = {
            "out_trade_no": order.order_no,
            "total_fee": format_yuan(order.amount),
            "mch_id": self.settings.wechat_mch_id,
            "body": PRODUCT_NAME,
            "type": "1",
            "auto": "0",
            "notify_url": f"{base}/webhook/wechat",
            "attach": "credits purchase",
            "return_url": return_url or f"{base}/pay-success",
        }
        params["sign"] = NATIVE_PAY_SCHEME.sign(params, self.settings.wechat_key)
        return params

    def create_payment(self, order: Order, price_id: Optional[str] = None,
                       return_url: Optional[str] = None) -> PaymentHandle:
        params = self.build_request(order, return_url)
        logger.info("[WeChat Pay] Initializing payment for order %s, total_fee=%s",
                    order.order_no, params["total_fee"])

        try:
            resp = self.http.post(
                self.settings.wechat_api_url,
                data=params,
                timeout=self.settings.provider_timeout,
            )
            resp.raise_for_status()
            payload = resp.json()
        except (requests.RequestException, ValueError) as e:
            raise PaymentProviderError(f"YunGouOS request failed: {e}") from e

        if not isinstance(payload, Mapping) or payload.get("code") != 0:
            msg = payload.get("msg") if isinstance(payload, Mapping) else payload
            raise PaymentProviderError(f"YunGouOS error: {msg}")

        qr_code = payload.get("data")
        if not qr_code:
            raise PaymentProviderError("YunGouOS returned no QR payload")

        logger.info("[WeChat Pay] QR code issued for order %s", order.order_no)
        return PaymentHandle(
            payment_type=self.name,
            order_no=order.order_no,
            data={"qr_code": qr_code, "qr_url": qr_code},
        )


class StripeCheckoutProvider(PaymentProvider):
    """Stripe hosted Checkout for card payments."""

    name = "stripe"

    def __init__(self, settings: Settings):
        self.settings = settings
        stripe.default_http_client = stripe.RequestsClient(timeout=settings.provider_timeout)

    def session_options(self, order: Order, price_id: Optional[str] = None) -> Dict[str, Any]:
        monthly = order.plan == Plan.MONTHLY.value
        price_data: Dict[str, Any] = {
            "currency": order.currency,
            "product_data": {"name": PRODUCT_NAME},
            "unit_amount": order.amount,
        }
        if monthly:
            price_data["recurring"] = {"interval": "month"}

        metadata = {
            "project": "aicover",
            "pay_scene": "buy-credits",
            "order_no": order.order_no,
            "user_email": order.user_email,
            "credits": str(order.credits),
        }
        if price_id:
            metadata["price_id"] = price_id

        base = self.settings.base_url
        return {
            "customer_email": order.user_email,
            "payment_method_types": ["card"],
            "line_items": [{"price_data": price_data, "quantity": 1}],
            "allow_promotion_codes": False,
            "metadata": metadata,
            "mode": "subscription" if monthly else "payment",
            "success_url": f"{base}/pay-success/{{CHECKOUT_SESSION_ID}}",
            "cancel_url": f"{base}/pricing",
        }

    def create_payment(self, order: Order, price_id: Optional[str] = None,
                       return_url: Optional[str] = None) -> PaymentHandle:
        options = self.session_options(order, price_id)
        logger.info("[Stripe] Creating %s session for order %s", options["mode"], order.order_no)

        try:
            checkout_session = stripe.checkout.Session.create(
                api_key=self.settings.stripe_private_key,
                **options,
            )
        except stripe.StripeError as e:
            raise PaymentProviderError(f"Stripe session create failed: {e}") from e

        logger.info("[Stripe] Created session %s", checkout_session.id)
        return PaymentHandle(
            payment_type=self.name,
            order_no=order.order_no,
            session_id=checkout_session.id,
            data={"public_key": self.settings.stripe_public_key},
        )


class ProviderRouter:
    """Picks the provider for a currency from the configured routes."""

    def __init__(self, providers: Mapping[str, PaymentProvider],
                 routes: Mapping[str, str], default: str):
        self.providers = dict(providers)
        self.routes = {k.lower(): v for k, v in routes.items()}
        self.default = default

    @classmethod
    def from_settings(cls, settings: Settings) -> "ProviderRouter":
        providers = [WechatPayProvider(settings), StripeCheckoutProvider(settings)]
        return cls(
            {p.name: p for p in providers},
            settings.payment_routes,
            settings.default_provider,
        )

    def for_currency(self, currency: str) -> PaymentProvider:
        name = self.routes.get(currency.lower(), self.default)
        provider = self.providers.get(name)
        if provider is None:
            raise InvalidParams(f"unsupported currency: {currency}")
        return provider
