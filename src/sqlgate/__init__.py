"""Configuration-driven REST endpoints backed by pooled SQL databases."""

__version__ = "0.1.0"
