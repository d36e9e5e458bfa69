"""Query normalization."""
