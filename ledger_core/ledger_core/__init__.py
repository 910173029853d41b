"""Billing and credit-ledger domain for fleet compliance tenants."""

__version__ = "0.4.0"
