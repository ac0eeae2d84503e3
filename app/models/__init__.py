from app.models.book import Book
from app.models.checkout import ActiveCheckout, ReturnedCheckout
from app.models.user import User, UserRole

__all__ = ["ActiveCheckout", "Book", "ReturnedCheckout", "User", "UserRole"]
