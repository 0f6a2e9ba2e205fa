"""Route modules for the Subtrack API."""
