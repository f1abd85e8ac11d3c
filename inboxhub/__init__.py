"""InboxHub - multi-tenant inbox manager for messaging-platform business accounts."""

__version__ = "1.0.0"
