"""Command-line interface for promptsync."""
