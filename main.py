import logging
from typing import Callable, Optional

import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, ConfigDict, Field

from checkout import CheckoutDispatcher
from config import Settings
from errors import InvalidParams, NotifyRejected, PaymentProviderError, SignatureMismatch, Unauthenticated
from providers import ProviderRouter
from reconcile import FAIL, StripeEventReconciler, WechatNotifyReconciler
from store import OrderStore, make_engine

logger = logging.getLogger(__name__)

Authenticate = Callable[[Request], Optional[str]]


def header_authenticate(request: Request) -> Optional[str]:
    # 登录态由上游鉴权代理校验，这里只读取其写入的用户邮箱
    email = request.headers.get("x-user-email", "").strip()
    return email or None


def resp_data(data) -> dict:
    return {"code": 0, "message": "ok", "data": data}


def resp_err(message: str, status_code: int = 400, code: int = -1) -> JSONResponse:
    return JSONResponse({"code": code, "message": message}, status_code=status_code)


class CheckoutRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    price_id: Optional[str] = Field(default=None, alias="priceId")
    plan: Optional[str] = None
    credits: Optional[int] = None
    amount: Optional[int] = None
    currency: Optional[str] = None
    return_url: Optional[str] = None


def require_user(request: Request) -> str:
    email = request.app.state.authenticate(request)
    if not email:
        raise Unauthenticated("no auth")
    return email


def create_app(settings: Optional[Settings] = None,
               store: Optional[OrderStore] = None,
               router: Optional[ProviderRouter] = None,
               authenticate: Authenticate = header_authenticate) -> FastAPI:
    if settings is None:
        settings = Settings.from_env()
        logging.basicConfig(
            level=settings.log_level,
            format="%(asctime)s %(levelname)s %(name)s %(message)s",
        )
    if store is None:
        store = OrderStore(make_engine(settings.database_url))
    if router is None:
        router = ProviderRouter.from_settings(settings)

    store.init_schema()

    app = FastAPI()
    app.state.settings = settings
    app.state.store = store
    app.state.authenticate = authenticate
    app.state.dispatcher = CheckoutDispatcher(store, router)
    app.state.wechat_reconciler = WechatNotifyReconciler(settings, store)
    app.state.stripe_reconciler = StripeEventReconciler(settings, store)

    @app.exception_handler(Unauthenticated)
    async def on_unauthenticated(request: Request, exc: Unauthenticated):
        return resp_err("no auth", status_code=401, code=-2)

    @app.exception_handler(InvalidParams)
    async def on_invalid_params(request: Request, exc: InvalidParams):
        return resp_err(str(exc) or "invalid params", status_code=400)

    @app.exception_handler(RequestValidationError)
    async def on_validation_error(request: Request, exc: RequestValidationError):
        return resp_err("invalid params", status_code=400)

    @app.exception_handler(PaymentProviderError)
    async def on_provider_error(request: Request, exc: PaymentProviderError):
        logger.error("[Checkout] Payment provider error: %s", exc)
        return resp_err("payment failed", status_code=502)

    @app.post("/checkout")
    def checkout(body: CheckoutRequest, user_email: str = Depends(require_user)):
        logger.info("[Checkout] User %s requests plan=%s amount=%s currency=%s credits=%s",
                    user_email, body.plan, body.amount, body.currency, body.credits)
        if not all([body.credits, body.amount, body.plan, body.currency]):
            raise InvalidParams("invalid params")

        handle = app.state.dispatcher.create_checkout(
            user_email=user_email,
            price_id=body.price_id,
            plan=body.plan,
            amount=body.amount,
            currency=body.currency,
            credits=body.credits,
            return_url=body.return_url,
        )
        return resp_data(handle.to_dict())

    @app.get("/orders/wechat/status")
    def order_status(order_no: Optional[str] = None):
        if not order_no:
            return resp_err("订单号不能为空", status_code=400)

        order = app.state.store.get_order(order_no)
        if order is None:
            logger.info("[Order Status] Order not found: %s", order_no)
            return resp_err("订单不存在", status_code=404)

        return resp_data({
            "paid": order.is_paid,
            "status": order.order_status,
            "orderNo": order.order_no,
        })

    @app.post("/webhook/wechat")
    async def webhook_wechat(request: Request):
        content_type = request.headers.get("content-type", "")
        try:
            if "application/json" in content_type:
                raw = await request.json()
            else:
                raw = dict(await request.form())
        except Exception:
            logger.exception("[WeChat Webhook] Unreadable notification body")
            return PlainTextResponse(FAIL, status_code=400)

        if not isinstance(raw, dict):
            return PlainTextResponse(FAIL, status_code=400)

        fields = {k: "" if v is None else str(v) for k, v in raw.items()}
        reply = app.state.wechat_reconciler.handle(fields)
        return PlainTextResponse(reply.text, status_code=reply.status_code)

    @app.post("/webhook/stripe")
    async def webhook_stripe(request: Request):
        payload = await request.body()
        sig_header = request.headers.get("stripe-signature", "")

        try:
            app.state.stripe_reconciler.handle(payload, sig_header)
        except InvalidParams:
            raise HTTPException(status_code=400, detail="Invalid payload")
        except SignatureMismatch:
            raise HTTPException(status_code=401, detail="Invalid signature")
        except NotifyRejected as e:
            logger.error("[Stripe Webhook] Rejected: %s", e)
            raise HTTPException(status_code=400, detail="Rejected")

        # 返回 200 表示 Webhook 处理成功
        return {"status": "ok"}

    @app.get("/user/credits")
    def user_credits(user_email: str = Depends(require_user)):
        return resp_data({
            "user_email": user_email,
            "credits": app.state.store.credit_balance(user_email),
        })

    return app


if __name__ == "__main__":
    uvicorn.run("main:create_app", factory=True, host="0.0.0.0", port=8000)
