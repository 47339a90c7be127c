"""
Domain errors

Every error here is recoverable by the caller and is rendered by the API as
{"detail": <message>, "error": <code>} with the class' status code.
"""


class RentalError(Exception):
    """Request could not be completed"""
    status_code = 400
    code = "rental_error"

    def __init__(self, message: str = None):
        super().__init__(message or self.__class__.__doc__.strip())


class InvalidDateRange(RentalError):
    """End date must be after start date"""
    code = "invalid_date_range"


class MissingRentalWindow(RentalError):
    """Rental dates are required"""
    code = "missing_rental_window"


class InsufficientStock(RentalError):
    """Not enough units available"""
    code = "insufficient_stock"


class EmptyCart(RentalError):
    """Cart is empty"""
    code = "empty_cart"


class StockUnavailable(RentalError):
    """Unable to reserve items for the requested window"""
    status_code = 409
    code = "stock_unavailable"


class QuotationExpired(RentalError):
    """Quotation has expired"""
    code = "quotation_expired"


class InvalidStateTransition(RentalError):
    """Transition not allowed from the current status"""
    status_code = 409
    code = "invalid_state_transition"


class PricingUnavailable(RentalError):
    """No pricing configured for this product"""
    code = "pricing_unavailable"


class CartItemNotFound(RentalError):
    """Item is not in the cart"""
    status_code = 404
    code = "cart_item_not_found"
