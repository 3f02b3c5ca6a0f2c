"""Multi-provider push notification delivery service."""
