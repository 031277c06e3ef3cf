"""
ridepay - payment and payout orchestration for a ride-sharing marketplace.

Opens charge orders for bookings, verifies captured payments, splits the fare
into platform commission, GST and the driver's share, and pays drivers out
through RazorpayX with retry and reconciliation.
"""

__version__ = "1.0.0"
