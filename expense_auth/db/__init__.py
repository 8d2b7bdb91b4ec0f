"""Ledger persistence for expense-auth."""
