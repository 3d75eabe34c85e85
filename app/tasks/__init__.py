from app.tasks.billing import expire_subscriptions

__all__ = ["expire_subscriptions"]
