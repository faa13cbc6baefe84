"""SQL migrations for the projection tables."""
