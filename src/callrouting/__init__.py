"""
Inbound call-routing engine for Cloudonix voice webhooks.
"""

__version__ = "0.1.0"
