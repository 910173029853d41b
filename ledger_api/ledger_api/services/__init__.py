"""Service layer: payment processor gateway, checkout, webhook reconciliation and scheduling."""
