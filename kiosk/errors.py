class PaymentError(Exception):
    """Base class for payment flow failures."""


class CredentialsMissing(PaymentError):
    """The resolved store has no gateway access token (or device) configured."""


class GatewayUnavailable(PaymentError):
    """Network failure or unexpected non-2xx answer from the payment gateway."""

    def __init__(self, message, status_code=None, body=None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class NotFound(PaymentError):
    """The gateway does not know the object (e.g. an intent purged by the terminal)."""


class IntentConflict(PaymentError):
    """The terminal refused to delete an intent that is being processed (HTTP 409)."""


class AmbiguousMatch(PaymentError):
    """More than one gateway payment fits an amount/time-window search.

    ``candidates`` is ordered most recent first.
    """

    def __init__(self, candidates):
        super().__init__(f"{len(candidates)} payments match the same amount")
        self.candidates = candidates
