"""Integration adapters.

Adapters connect the reconciliation engine to the chat platform.
"""
