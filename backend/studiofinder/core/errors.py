"""Exception taxonomy for webhook ingress and payment processing"""


class PaymentEngineError(Exception):
    """Base class for errors raised by the payment engine"""


class WebhookConfigurationError(PaymentEngineError):
    """Required server configuration (webhook secret) is missing"""


class VerificationError(PaymentEngineError):
    """Callback could not be authenticated or parsed"""


class MalformedEventError(PaymentEngineError):
    """A verified event lacks data its handler cannot proceed without"""


class MissingExpiryError(MalformedEventError):
    """Early or standard renewal requested with no known current expiry"""

    def __init__(self, renewal_type: str, user_id: str):
        self.renewal_type = renewal_type
        self.user_id = user_id
        super().__init__(
            f"{renewal_type} renewal for user {user_id} requires an existing expiry date"
        )


class MembershipInvariantError(PaymentEngineError):
    """Membership state is inconsistent after a write that must have produced it"""
