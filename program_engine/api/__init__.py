"""REST API for the Program Engine."""
