from typing import Optional

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool

from config import Settings
from errors import PaymentProviderError
from main import create_app
from models import Order
from providers import PaymentHandle, PaymentProvider, ProviderRouter, format_yuan
from sign import NOTIFY_SCHEME
from store import OrderStore, make_engine

MCH_ID = "1602333609"
WECHAT_KEY = "test-yungouos-key"
USER = "buyer@example.com"


class FakeProvider(PaymentProvider):
    def __init__(self, name: str, session_id: Optional[str] = None, fail: bool = False,
                 one_time_only: bool = False):
        self.name = name
        self.session_id = session_id
        self.fail = fail
        self.one_time_only = one_time_only
        self.calls = []

    def supports_plan(self, plan: str) -> bool:
        return plan == "one-time" if self.one_time_only else True

    def create_payment(self, order: Order, price_id=None, return_url=None) -> PaymentHandle:
        self.calls.append(order.order_no)
        if self.fail:
            raise PaymentProviderError("upstream down")
        return PaymentHandle(
            payment_type=self.name,
            order_no=order.order_no,
            session_id=self.session_id,
            data={"qr_code": f"weixin://wxpay/{order.order_no}"} if self.session_id is None else {},
        )


@pytest.fixture
def settings():
    return Settings(
        base_url="https://aicover.test",
        database_url="sqlite://",
        wechat_mch_id=MCH_ID,
        wechat_key=WECHAT_KEY,
        stripe_public_key="pk_test_123",
        stripe_private_key="sk_test_123",
        stripe_webhook_secret="whsec_test",
        provider_timeout=5,
    )


@pytest.fixture
def store():
    store = OrderStore(make_engine("sqlite://", poolclass=StaticPool))
    store.init_schema()
    return store


@pytest.fixture
def wechat():
    return FakeProvider("wechat", one_time_only=True)


@pytest.fixture
def card():
    return FakeProvider("stripe", session_id="cs_test_abc")


@pytest.fixture
def router(wechat, card):
    return ProviderRouter({"wechat": wechat, "stripe": card}, {"cny": "wechat"}, "stripe")


@pytest.fixture
def client(settings, store, router):
    app = create_app(settings=settings, store=store, router=router)
    return TestClient(app)


@pytest.fixture
def auth():
    return {"X-User-Email": USER}


def make_order(store: OrderStore, order_no: str = "20250101000001", amount: int = 2025,
               credits: int = 80, currency: str = "cny", provider: str = "wechat") -> Order:
    return store.insert_order(Order(
        order_no=order_no,
        user_email=USER,
        amount=amount,
        currency=currency,
        plan="one-time",
        credits=credits,
        provider=provider,
    ))


def signed_notify(order_no: str, amount: int = 2025, code: str = "1", mch_id: str = MCH_ID,
                  key: str = WECHAT_KEY, money: Optional[str] = None) -> dict:
    fields = {
        "code": code,
        "orderNo": "Y" + order_no,
        "outTradeNo": order_no,
        "payNo": "4200001234" + order_no[-6:],
        "money": money if money is not None else format_yuan(amount),
        "mchId": mch_id,
        "payChannel": "wxpay",
        "time": "2025-01-01 12:00:00",
        "attach": "credits purchase",
    }
    fields["sign"] = NOTIFY_SCHEME.sign(fields, key)
    return fields
