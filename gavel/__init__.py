"""Charity-auction bidding and checkout engine."""

__version__ = "0.1.0"
