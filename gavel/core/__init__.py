"""Core bidding and checkout logic."""
