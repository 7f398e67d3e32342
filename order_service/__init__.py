"""
Order service: checkout, payment reconciliation and stock ledger for the storefront.
"""
