import logging
from typing import Optional

from sqlalchemy import func, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import SQLModel, Session, create_engine, select

from models import CreditGrant, Order, OrderStatus, utcnow

logger = logging.getLogger(__name__)


def make_engine(database_url: str, **kwargs) -> Engine:
    if database_url.startswith("sqlite"):
        kwargs.setdefault("connect_args", {"check_same_thread": False})
    return create_engine(database_url, echo=False, **kwargs)


class OrderStore:
    """Order records keyed by ``order_no``, plus the credit grants tied to paid orders."""

    def __init__(self, engine: Engine):
        self.engine = engine

    def init_schema(self):
        # 创建数据库表
        SQLModel.metadata.create_all(self.engine)

    def insert_order(self, order: Order) -> Order:
        with Session(self.engine) as db_sess:
            db_sess.add(order)
            db_sess.commit()
            db_sess.refresh(order)
        return order

    def get_order(self, order_no: str) -> Optional[Order]:
        with Session(self.engine) as db_sess:
            return db_sess.exec(
                select(Order).where(Order.order_no == order_no)
            ).first()

    def get_order_by_session(self, session_id: str) -> Optional[Order]:
        with Session(self.engine) as db_sess:
            return db_sess.exec(
                select(Order).where(Order.session_id == session_id)
            ).first()

    def set_session_id(self, order_no: str, session_id: str) -> bool:
        """Attach the provider handle once. Returns False if the order already has one."""
        with Session(self.engine) as db_sess:
            result = db_sess.execute(
                update(Order)
                .where(Order.order_no == order_no, Order.session_id.is_(None))
                .values(session_id=session_id)
            )
            db_sess.commit()
            return result.rowcount == 1

    def mark_paid(self, order_no: str) -> bool:
        """
        Move a pending order to paid and grant its credits in one transaction.

        Returns True only for the call that performed the transition. Orders that are
        already paid, or do not exist, return False and grant nothing. A grant that
        already exists for a pending order rolls the transition back and raises
        ``IntegrityError``.
        """
        with Session(self.engine) as db_sess:
            result = db_sess.execute(
                update(Order)
                .where(
                    Order.order_no == order_no,
                    Order.order_status == int(OrderStatus.PENDING),
                )
                .values(order_status=int(OrderStatus.PAID), paid_at=utcnow())
            )
            if result.rowcount != 1:
                db_sess.rollback()
                return False

            order = db_sess.exec(
                select(Order).where(Order.order_no == order_no)
            ).one()
            user_email, credits = order.user_email, order.credits
            db_sess.add(CreditGrant(order_no=order_no, user_email=user_email, credits=credits))
            try:
                db_sess.commit()
            except IntegrityError:
                db_sess.rollback()
                # 积分记录与订单状态不一致，交由调用方按失败处理，等待渠道重试
                logger.error("[Order Store] Credits already granted for pending order %s", order_no)
                raise

        logger.info("[Order Store] Order %s paid, granted %s credits to %s",
                    order_no, credits, user_email)
        return True

    def credit_balance(self, user_email: str) -> int:
        with Session(self.engine) as db_sess:
            total = db_sess.exec(
                select(func.coalesce(func.sum(CreditGrant.credits), 0))
                .where(CreditGrant.user_email == user_email)
            ).one()
        return int(total)
