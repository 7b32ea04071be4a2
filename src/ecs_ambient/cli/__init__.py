"""Command-line interface for the ECS ambient mesh demo."""
