"""Command line interface for the Program Engine."""
