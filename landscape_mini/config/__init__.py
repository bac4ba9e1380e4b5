"""Build configuration loading."""
