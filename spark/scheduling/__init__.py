"""Periodic selection of integrations that are due for a pull."""
