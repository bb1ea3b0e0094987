"""Provider access, identity resolution and aggregation services."""
