"""Stripe checkout, subscription and webhook relay."""

__version__ = "0.1.0"
