"""API routers for the EPTW core."""
