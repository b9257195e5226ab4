# API routes
from edpsych.api.routes import health
from edpsych.api.routes import subscription
from edpsych.api.routes import billing_webhooks

__all__ = ["health", "subscription", "billing_webhooks"]
