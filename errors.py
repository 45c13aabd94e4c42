class CheckoutError(Exception):
    """Base class for errors raised while serving a purchase."""


class InvalidParams(CheckoutError):
    pass


class Unauthenticated(CheckoutError):
    pass


class PaymentProviderError(CheckoutError):
    """Upstream provider call failed. The message is logged, never returned to clients."""


class NotifyRejected(Exception):
    """A payment notification failed validation. All subclasses answer the provider with FAIL."""


class SignatureMismatch(NotifyRejected):
    pass


class MerchantMismatch(NotifyRejected):
    pass


class OrderNotFound(NotifyRejected):
    pass


class AmountMismatch(NotifyRejected):
    pass
