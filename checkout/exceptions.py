"""Error taxonomy for the checkout service.

Every error carries the HTTP status it maps to and the message that is safe
to show to a client. ``main.py`` renders them through a single handler.
"""

GENERIC_SERVICE_MESSAGE = "Payment service is temporarily unavailable. Please try again in a few moments."


class CheckoutError(Exception):
    http_status = 500
    code = "checkout_error"

    def __init__(self, message: str, public_message: str | None = None):
        super().__init__(message)
        self.message = message
        self._public_message = public_message

    @property
    def public_message(self) -> str:
        return self._public_message or self.message

    def to_dict(self) -> dict:
        return {"success": False, "error": self.code, "message": self.public_message}


class ValidationError(CheckoutError):
    """Client input is malformed. Never reaches the store or the processor."""

    http_status = 400
    code = "validation_error"

    def __init__(self, field: str, message: str):
        super().__init__(message)
        self.field = field

    def to_dict(self) -> dict:
        body = super().to_dict()
        body["field"] = self.field
        return body


class ConfigurationError(CheckoutError):
    """Processor credentials or the postback secret are missing."""

    http_status = 500
    code = "configuration_error"

    def __init__(self, message: str):
        super().__init__(message, public_message=GENERIC_SERVICE_MESSAGE)


class StoreWriteError(CheckoutError):
    http_status = 503
    code = "store_write_error"

    def __init__(self, message: str):
        super().__init__(message, public_message=GENERIC_SERVICE_MESSAGE)


class DuplicateOrderError(CheckoutError):
    http_status = 409
    code = "duplicate_order"

    def __init__(self, order_id: str):
        super().__init__(f"Order {order_id} already exists")
        self.order_id = order_id


class OrderNotFoundError(CheckoutError):
    http_status = 404
    code = "order_not_found"

    def __init__(self, order_id: str):
        super().__init__(f"Order {order_id} not found")
        self.order_id = order_id


class ProcessorUnavailable(CheckoutError):
    """The card processor could not be reached or answered with an error."""

    http_status = 502
    code = "processor_unavailable"

    def __init__(self, message: str):
        super().__init__(
            message,
            public_message="The payment is still processing. Please check your email for confirmation "
            "or contact support if the charge appears on your card.",
        )


class ProcessorTimeout(ProcessorUnavailable):
    http_status = 504
    code = "processor_timeout"


class PostbackFormatError(CheckoutError):
    """The postback body is unusable; the processor should redeliver."""

    http_status = 500
    code = "postback_format_error"

    def __init__(self, message: str):
        super().__init__(message, public_message="Failed to process postback")


class MissingFieldsError(PostbackFormatError):
    code = "missing_fields"

    def __init__(self, fields: list[str]):
        super().__init__(f"Missing required fields: {', '.join(fields)}")
        self.fields = fields

    def to_dict(self) -> dict:
        body = super().to_dict()
        body["missingFields"] = self.fields
        return body


class AuthenticationError(CheckoutError):
    """The postback shared secret did not match."""

    http_status = 403
    code = "authentication_error"

    def __init__(self, message: str):
        super().__init__(message, public_message="Postback rejected")


class TransactionConflictError(CheckoutError):
    """A transaction id is already bound to a different order."""

    http_status = 409
    code = "transaction_conflict"

    def __init__(self, transaction_id: str, order_id: str, existing_order_id: str):
        super().__init__(
            f"Transaction {transaction_id} already belongs to order {existing_order_id}, not {order_id}",
            public_message="Postback rejected",
        )
        self.transaction_id = transaction_id
        self.order_id = order_id
        self.existing_order_id = existing_order_id
