import logging
from dataclasses import dataclass
from typing import Mapping

import stripe

from config import Settings
from errors import (
    AmountMismatch,
    InvalidParams,
    MerchantMismatch,
    NotifyRejected,
    OrderNotFound,
    SignatureMismatch,
)
from providers import parse_yuan
from sign import NOTIFY_SCHEME
from store import OrderStore

logger = logging.getLogger(__name__)

SUCCESS = "SUCCESS"
FAIL = "FAIL"


@dataclass(frozen=True)
class NotifyReply:
    text: str
    status_code: int


class WechatNotifyReconciler:
    """
    处理 YunGouOS 支付结果异步通知。

    通知字段: code(1 成功 / 0 失败), orderNo, outTradeNo, payNo, money(元), mchId, sign ...
    返回 SUCCESS 后 YunGouOS 停止重试，返回 FAIL 或非 200 会被重新投递。
    """

    def __init__(self, settings: Settings, store: OrderStore):
        self.settings = settings
        self.store = store

    def handle(self, fields: Mapping[str, str]) -> NotifyReply:
        try:
            self._reconcile(fields)
        except NotifyRejected as e:
            logger.error("[WeChat Webhook] Rejected %s: %s", type(e).__name__, e)
            return NotifyReply(FAIL, 400)
        except Exception:
            logger.exception("[WeChat Webhook] Error processing notification")
            return NotifyReply(FAIL, 500)
        return NotifyReply(SUCCESS, 200)

    def _reconcile(self, fields: Mapping[str, str]):
        out_trade_no = fields.get("outTradeNo")
        logger.info("[WeChat Webhook] Received notification for order %s", out_trade_no)

        if not NOTIFY_SCHEME.verify(fields, self.settings.wechat_key):
            raise SignatureMismatch("invalid signature")

        if fields.get("mchId") != self.settings.wechat_mch_id:
            raise MerchantMismatch(f"unexpected merchant {fields.get('mchId')!r}")

        order = self.store.get_order(out_trade_no) if out_trade_no else None
        if order is None:
            raise OrderNotFound(f"order {out_trade_no!r} not found")

        try:
            paid_amount = parse_yuan(fields.get("money", ""))
        except ValueError as e:
            raise AmountMismatch(str(e))
        if paid_amount != order.amount:
            raise AmountMismatch(f"order {order.order_no} amount {order.amount}, notified {paid_amount}")

        if fields.get("code") != "1":
            logger.warning("[WeChat Webhook] Order %s reported unpaid (code=%s)",
                           order.order_no, fields.get("code"))
            return

        if self.store.mark_paid(order.order_no):
            logger.info("[WeChat Webhook] Order %s processed", order.order_no)
        else:
            logger.info("[WeChat Webhook] Order %s already paid, duplicate delivery", order.order_no)


class StripeEventReconciler:
    """Marks orders paid from Stripe ``checkout.session.completed`` events."""

    def __init__(self, settings: Settings, store: OrderStore):
        self.settings = settings
        self.store = store

    def handle(self, payload: bytes, sig_header: str) -> bool:
        """Returns True when the event caused a pending -> paid transition."""
        try:
            event = stripe.Webhook.construct_event(
                payload=payload,
                sig_header=sig_header,
                secret=self.settings.stripe_webhook_secret,
            )
        except ValueError:
            raise InvalidParams("Invalid payload")
        except stripe.SignatureVerificationError:
            raise SignatureMismatch("Invalid signature")

        if event["type"] != "checkout.session.completed":
            logger.info("[Stripe Webhook] Ignoring event %s", event["type"])
            return False

        session_obj = event["data"]["object"]
        if session_obj.get("payment_status") != "paid":
            logger.info("[Stripe Webhook] Session %s not paid yet", session_obj.get("id"))
            return False

        metadata = session_obj.get("metadata") or {}
        order_no = metadata.get("order_no")
        order = self.store.get_order(order_no) if order_no else None
        if order is None:
            order = self.store.get_order_by_session(session_obj.get("id"))
        if order is None:
            raise OrderNotFound(f"no order for session {session_obj.get('id')}")

        if session_obj.get("amount_total") != order.amount:
            raise AmountMismatch(
                f"order {order.order_no} amount {order.amount}, paid {session_obj.get('amount_total')}"
            )

        return self.store.mark_paid(order.order_no)
