"""
Game Economy Service

Currency balances, taxed transfers, treasury accounting and idempotent
account migrations for the life-simulation game. Monetary values are
fixed-scale integers, never floats.
"""

__version__ = "1.0.0"
