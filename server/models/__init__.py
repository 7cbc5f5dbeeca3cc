from .integrations import Integration
from .profiles import Profile
from .webhook_events import WebhookEvent

__all__ = [
    "Integration",
    "Profile",
    "WebhookEvent",
]
