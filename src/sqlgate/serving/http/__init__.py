"""HTTP adapters for the serving layer."""
