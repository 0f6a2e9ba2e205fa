"""Gemini model access and retrying call helper."""
