"""Model lifecycle, inference and decision services."""
