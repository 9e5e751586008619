"""Validation of downscaled and retrieved LST against independent products."""
