"""Companion AI — queued chat backend for the wellness companion app."""

__version__ = "0.1.0"
