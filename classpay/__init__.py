"""
ClassPay - paid class registration on Paystack.

Checkout attempts, exactly-once reconciliation of confirmed payments into
registrations, webhook ingress, and the expiry and reminder sweeps.
"""

__version__ = "1.0.0"
