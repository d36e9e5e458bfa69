"""HTTP surface for the protocol retrieval service."""
