import calendar
from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Optional

from sqlmodel import SQLModel, Field


class OrderStatus(IntEnum):
    PENDING = 1
    PAID = 2


class Plan(str, Enum):
    ONE_TIME = "one-time"
    MONTHLY = "monthly"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def add_one_month(moment: datetime) -> datetime:
    year = moment.year + moment.month // 12
    month = moment.month % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


class Order(SQLModel, table=True):
    __tablename__ = "orders"

    id: Optional[int] = Field(default=None, primary_key=True)
    order_no: str = Field(index=True, unique=True)          # 商户订单号
    user_email: str = Field(index=True)                     # 下单用户
    amount: int                                             # 订单金额，单位：分
    currency: str                                           # 币种，小写，如 'cny','usd'
    plan: str                                               # 'one-time' 或 'monthly'
    credits: int                                            # 支付成功后发放的积分
    provider: str                                           # 支付渠道：'wechat','stripe'
    order_status: int = Field(default=int(OrderStatus.PENDING))  # 1: 待支付, 2: 已支付
    session_id: Optional[str] = Field(default=None, index=True)  # Stripe Checkout Session ID
    created_at: datetime = Field(default_factory=utcnow)
    expired_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None

    @property
    def is_paid(self) -> bool:
        return self.order_status == OrderStatus.PAID


class CreditGrant(SQLModel, table=True):
    __tablename__ = "credit_grants"

    id: Optional[int] = Field(default=None, primary_key=True)
    order_no: str = Field(unique=True)  # 每个订单最多发放一次
    user_email: str = Field(index=True)
    credits: int
    created_at: datetime = Field(default_factory=utcnow)
