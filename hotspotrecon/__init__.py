"""hotspotrecon - payment reconciliation and commission accounting for hotspot billing.

Matches M-Pesa payment confirmations against internally created orders,
keeps an append-only commission ledger and gates merchant payouts.
"""

__version__ = "0.3.0"
__author__ = "hotspotrecon contributors"
