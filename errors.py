"""
Typed failures raised by the service layer.

The HTTP layer maps each one to its `status_code`; nothing below main.py
knows about HTTP beyond that number.
"""


class StoreError(Exception):
    status_code = 400
    default_message = "Request could not be completed"

    def __init__(self, message=None):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message


class ProductNotFound(StoreError):
    status_code = 404
    default_message = "Product not found"


class ProductInUse(StoreError):
    status_code = 409
    default_message = "Product is referenced by existing orders"


class InsufficientStock(StoreError):
    default_message = "Insufficient stock"

    def __init__(self, product_name=None, message=None):
        if message is None and product_name:
            message = f"Insufficient stock for {product_name}"
        super().__init__(message)
        self.product_name = product_name


class InvalidQuantity(StoreError):
    default_message = "Quantity must be greater than zero"


class InvalidStockValue(StoreError):
    default_message = "Stock must not be negative"


class EmptyCart(StoreError):
    default_message = "Cart is empty"


class CartItemNotFound(StoreError):
    status_code = 404
    default_message = "Cart item not found"


class OrderNotFound(StoreError):
    status_code = 404
    default_message = "Order not found"


class InvalidTransition(StoreError):
    default_message = "Order cannot move to that status"


class InvalidOrExpiredPin(StoreError):
    default_message = "Invalid or expired PIN"


class UserNotFound(StoreError):
    status_code = 404
    default_message = "User not found"
