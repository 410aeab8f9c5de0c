"""Consumer group status notifications sent by e-mail or HTTP from templates."""

__version__ = "0.1.0"

__all__ = [
    "base",
    "config",
    "coordinator",
    "email_notifier",
    "http_notifier",
    "models",
    "templating",
]