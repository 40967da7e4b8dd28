"""External venue integrations."""
