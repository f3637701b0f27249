"""
Customer models re-export hub for Ledgerline Platform
"""

from .customer_models import Customer, CustomerContract

__all__ = [
    "Customer",
    "CustomerContract",
]
