"""Service layer for the billing engine."""
