"""
Single-domain TLS certificate keeper.

Tracks when the managed certificate is due for renewal, obtains a new one
via ACME DNS-01 and records it durably, once a day, forever.
"""

__version__ = "0.1.0"
