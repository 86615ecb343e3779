"""Infrastructure models package exports."""
from .base import Base, metadata
from .payment import OrderModel
from .application import ApplicationModel

__all__ = [
    "Base",
    "metadata",
    "OrderModel",
    "ApplicationModel",
]
