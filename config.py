import os
from dataclasses import dataclass, field
from typing import Dict

from dotenv import load_dotenv

YUNGOUOS_NATIVE_PAY_URL = "https://api.pay.yungouos.com/api/pay/wxpay/nativePay"


def parse_routes(raw: str) -> Dict[str, str]:
    """
    解析币种到支付渠道的映射，格式: "cny:wechat,usd:stripe"
    """
    routes = {}
    for item in raw.split(","):
        item = item.strip()
        if not item:
            continue
        currency, _, provider = item.partition(":")
        if not provider:
            raise ValueError(f"Bad PAYMENT_ROUTES entry: {item!r}")
        routes[currency.strip().lower()] = provider.strip()
    return routes


@dataclass(frozen=True)
class Settings:
    base_url: str = "http://localhost:8000"
    database_url: str = "sqlite:///./orders.db"

    # YunGouOS 微信支付
    wechat_mch_id: str = ""
    wechat_key: str = ""
    wechat_api_url: str = YUNGOUOS_NATIVE_PAY_URL

    # Stripe
    stripe_public_key: str = ""
    stripe_private_key: str = ""
    stripe_webhook_secret: str = ""

    payment_routes: Dict[str, str] = field(default_factory=lambda: {"cny": "wechat"})
    default_provider: str = "stripe"
    provider_timeout: float = 20.0
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        load_dotenv()
        return cls(
            base_url=os.getenv("WEB_BASE_URI", cls.base_url).rstrip("/"),
            database_url=os.getenv("DATABASE_URL", cls.database_url),
            wechat_mch_id=os.getenv("YUNGOUOS_MCH_ID", ""),
            wechat_key=os.getenv("YUNGOUOS_KEY", ""),
            wechat_api_url=os.getenv("YUNGOUOS_API_URL", YUNGOUOS_NATIVE_PAY_URL),
            stripe_public_key=os.getenv("STRIPE_PUBLIC_KEY", ""),
            stripe_private_key=os.getenv("STRIPE_PRIVATE_KEY", ""),
            stripe_webhook_secret=os.getenv("STRIPE_WEBHOOK_SECRET", ""),
            payment_routes=parse_routes(os.getenv("PAYMENT_ROUTES", "cny:wechat")),
            default_provider=os.getenv("DEFAULT_PROVIDER", cls.default_provider),
            provider_timeout=float(os.getenv("PROVIDER_TIMEOUT", "20")),
            log_level=os.getenv("LOG_LEVEL", cls.log_level).upper(),
        )
