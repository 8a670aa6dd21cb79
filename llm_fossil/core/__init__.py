"""Core error taxonomy and request validation."""
