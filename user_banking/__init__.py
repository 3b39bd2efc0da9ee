"""
User Banking Service

Users, bank accounts and monetary transactions behind token authentication
and role/ownership authorization, with a ledger that keeps every account
balance equal to the net effect of its transaction history.
"""

__version__ = "1.0.0"
