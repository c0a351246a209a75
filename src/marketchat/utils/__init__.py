"""Configuration, logging and small async helpers."""
