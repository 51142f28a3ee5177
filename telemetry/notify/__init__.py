"""
Geo Fan-out Notification

Entity and bounding-box subscriptions and delivery of accepted updates.
"""

from .delivery import Delivery, LoggingDelivery, RedisPubSubDelivery
from .notifier import GeoNotifier
from .subscriptions import SubscriptionRegistry

__all__ = [
    "Delivery",
    "LoggingDelivery",
    "RedisPubSubDelivery",
    "GeoNotifier",
    "SubscriptionRegistry",
]
