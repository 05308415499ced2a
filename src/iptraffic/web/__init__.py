"""HTTP metrics endpoint."""
