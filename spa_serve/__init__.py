"""HTTPS dev server for single-page apps with a self-issued certificate."""

__version__ = "0.1.0"
