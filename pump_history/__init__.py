"""Deduplicated 24 hour pump history log and Nightscout treatment reconciliation."""

__version__ = "0.1.0"
