"""
Entitlement reconciliation engine.

Decides, for any user at any instant, whether they hold paid access,
until when, and how many AI-generation credits remain.
"""

__version__ = "1.0.0"
