"""Image preprocessing helpers."""
