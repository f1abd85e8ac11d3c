"""
API routers, mounted under ``/api`` by the application.
"""
from inboxhub.api.routes import (
    auth,
    bot,
    broadcasts,
    channels,
    dashboard,
    events,
    files,
    messages,
    quick_replies,
    settings,
    tags,
    team,
    webhooks,
)

ROUTERS = [
    auth.router,
    channels.router,
    webhooks.router,
    messages.router,
    tags.router,
    quick_replies.router,
    broadcasts.router,
    team.router,
    settings.router,
    files.router,
    events.router,
    dashboard.router,
    bot.router,
]

__all__ = ["ROUTERS"]
