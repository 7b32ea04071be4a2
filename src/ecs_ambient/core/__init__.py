"""Configuration, models and exceptions."""
