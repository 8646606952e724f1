"""Electronic Permit-to-Work core."""

__version__ = "0.1.0"
