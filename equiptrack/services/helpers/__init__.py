"""Service-layer plumbing (transactions)."""
