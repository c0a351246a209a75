"""Platform notification backends."""
