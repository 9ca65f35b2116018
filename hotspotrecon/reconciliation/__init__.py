"""Payment reconciliation and commission accounting.

Normalizer → Matching Engine → Reconciliation Ledger → Commission → Payouts.
"""
