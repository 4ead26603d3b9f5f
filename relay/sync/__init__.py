"""
Recurring, policy-driven reconciliation of file trees between two connections.
"""
