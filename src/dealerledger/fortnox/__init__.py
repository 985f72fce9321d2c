"""Fortnox API integration."""
from dealerledger.fortnox.client import FortnoxClient

__all__ = ["FortnoxClient"]
