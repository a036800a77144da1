"""Webhook-triggered continuous deployment daemon."""

__version__ = "0.1.0"
