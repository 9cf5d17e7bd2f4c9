"""Royalty fee-split ledger: agreements, accruals, payouts, and reconciliation."""
