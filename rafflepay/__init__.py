"""Raffle ticket sales: checkout, payment reconciliation, ticket allocation."""

__version__ = "0.1.0"
