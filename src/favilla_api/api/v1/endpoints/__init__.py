"""Versioned API endpoint modules."""
