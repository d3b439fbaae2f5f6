"""Live road bridge status service."""
