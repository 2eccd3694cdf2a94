"""Command-line interface for gworkspace-credentials."""
