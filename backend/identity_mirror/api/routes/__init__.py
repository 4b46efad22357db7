# API routes
from identity_mirror.api.routes import health
from identity_mirror.api.routes import users
from identity_mirror.api.routes import webhooks_clerk

__all__ = ["health", "users", "webhooks_clerk"]
