"""clirelay: HTTP relay for a command-line model backend."""

__version__ = "0.1.0"
