"""Command-line entry points for mesh scripts."""
