"""Process and connection-table lookups backed by /proc."""
