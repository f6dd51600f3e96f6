"""Gekto: AI pair-programming widget injected into any running web app."""

__version__ = "0.1.0"
