from typing import Optional


class OrderError(Exception):
    """Base class for every failure order placement can surface."""

    code = "ORDER_ERROR"


class EmptyOrder(OrderError):
    code = "EMPTY_ORDER"

    def __init__(self):
        super().__init__("Order must have at least one item")


class InvalidQuantity(OrderError):
    code = "INVALID_QUANTITY"

    def __init__(self, product_id, quantity):
        self.product_id = product_id
        self.quantity = quantity
        super().__init__(f"Order quantity must be a positive integer (product={product_id}, quantity={quantity!r})")


class InvalidOrderLine(OrderError):
    """An order line that is not a {"product_id": int, "quantity": int} mapping."""

    code = "INVALID_ORDER_LINE"


class ProductNotFound(OrderError):
    code = "PRODUCT_NOT_FOUND"

    def __init__(self, product_id):
        self.product_id = product_id
        super().__init__(f"Product not found: {product_id}")


class InsufficientStock(OrderError):
    code = "OUT_OF_STOCK"

    def __init__(self, product_id: int, requested: int, available: int):
        self.product_id = product_id
        self.requested = requested
        self.available = available
        super().__init__(
            f"Product {product_id} out of stock (available={available}, requested={requested})"
        )


class InsufficientStockAtCommit(InsufficientStock):
    """Stock ran out between the snapshot read and the commit."""


class TransientError(OrderError):
    """A failure that is safe to retry from the snapshot read."""


class SerializationConflict(TransientError):
    code = "SERIALIZATION_CONFLICT"

    def __init__(self, message: str = "Concurrent transaction conflict"):
        super().__init__(message)


class StaleVersion(TransientError):
    code = "STALE_VERSION"

    def __init__(self, product_id: int, expected: Optional[int], actual: Optional[int]):
        self.product_id = product_id
        self.expected = expected
        self.actual = actual
        super().__init__(f"Product {product_id} changed since it was read (expected version={expected}, actual={actual})")


class StoreUnavailable(OrderError):
    """
    Transport or infrastructure failure.

    commit_sent is True when the failure happened while COMMIT was in
    flight, in which case the outcome of the transaction is unknown.
    """

    code = "STORE_UNAVAILABLE"

    def __init__(self, message: str, commit_sent: bool = False):
        self.commit_sent = commit_sent
        super().__init__(message)


class Conflict(OrderError):
    code = "CONFLICT"

    def __init__(self, attempts: int, cause: TransientError):
        self.attempts = attempts
        self.cause = cause
        super().__init__(f"Order could not be placed after {attempts} attempts: {cause}")


class Unavailable(OrderError):
    code = "UNAVAILABLE"

    def __init__(self, cause: StoreUnavailable):
        self.cause = cause
        super().__init__(f"Order store unavailable: {cause}")


class PlacementCancelled(OrderError):
    code = "CANCELLED"

    def __init__(self):
        super().__init__("Order placement cancelled before commit")
