class PaymentError(Exception):
    """Base class for payment gateway errors."""


class InitializationFailed(PaymentError):
    """
    The gateway refused or could not be reached while initializing a payment.

    Fatal to the checkout attempt: no PaymentRecord exists for the reference and
    the customer retries with a fresh one.
    """


class GatewayNotConfigured(InitializationFailed):
    pass


class NetworkFailure(PaymentError):
    """
    Verification could not reach a conclusion (timeout, connection error,
    gateway 5xx). Inconclusive, never a failed payment; callers retry later.
    """


class OrderAlreadyPaid(PaymentError):
    pass
