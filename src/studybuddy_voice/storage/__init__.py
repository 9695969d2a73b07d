"""Persistence for subscriptions, upgrade requests and premium usage."""

from .database import SubscriptionStore, create_store_engine, metadata
from .ledger import UsageLedger

__all__ = ["SubscriptionStore", "UsageLedger", "create_store_engine", "metadata"]
