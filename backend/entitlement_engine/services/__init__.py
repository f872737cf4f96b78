"""
Business logic services for entitlement reconciliation.
"""
