"""Interactive, search and background services."""
