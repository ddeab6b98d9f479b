"""nbctl: test client for the notebook socket server."""

__version__ = "0.1.0"
