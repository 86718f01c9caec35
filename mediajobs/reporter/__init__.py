from .bridge import NotificationBridge

__all__ = ["NotificationBridge"]
