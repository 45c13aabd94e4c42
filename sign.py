import hashlib
import hmac
import logging
from typing import Mapping, Optional, Sequence

logger = logging.getLogger(__name__)

SIGN_FIELD = "sign"


class SignScheme:
    """
    渠道签名规则（YunGouOS 风格的 MD5 签名）。

    1. 取参与签名的字段：fields 给定时按其顺序，否则取全部参数（sign 本身不参与）。
    2. sort_keys 为 True 时按参数名 ASCII 升序排序。
    3. 空值（None / ""）不参与签名。
    4. 拼接成 a=b&c=d 形式，末尾追加 &key=商户密钥。
    5. 做 MD5，转成大写十六进制。
    """

    def __init__(self, fields: Optional[Sequence[str]] = None, sort_keys: bool = False):
        self.fields = tuple(fields) if fields is not None else None
        self.sort_keys = sort_keys

    def sign_string(self, params: Mapping[str, object], secret: str) -> str:
        keys = list(self.fields) if self.fields is not None else list(params.keys())
        keys = [k for k in keys if k != SIGN_FIELD]
        if self.sort_keys:
            keys.sort()

        pairs = []
        for key in keys:
            value = params.get(key)
            if value is None or value == "":
                continue
            pairs.append(f"{key}={value}")

        return "&".join(pairs) + f"&key={secret}"

    def sign(self, params: Mapping[str, object], secret: str) -> str:
        raw = self.sign_string(params, secret).encode("utf-8")
        return hashlib.md5(raw).hexdigest().upper()

    def verify(self, params: Mapping[str, object], secret: str) -> bool:
        try:
            received = params.get(SIGN_FIELD)
            if not isinstance(received, str) or not received:
                return False
            expected = self.sign(params, secret)
            return hmac.compare_digest(expected, received)
        except Exception:
            logger.warning("[Sign] Could not verify signature", exc_info=True)
            return False


# YunGouOS nativePay 请求：按参数名排序
NATIVE_PAY_SCHEME = SignScheme(
    fields=("out_trade_no", "total_fee", "mch_id", "body"),
    sort_keys=True,
)

# YunGouOS 异步通知：按文档顺序
NOTIFY_SCHEME = SignScheme(
    fields=("code", "mchId", "money", "orderNo", "outTradeNo", "payNo"),
)
