"""HTTP service for tenant billing, credit ledger and payment webhooks."""

__version__ = "0.4.0"
