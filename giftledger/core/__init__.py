"""Core ledger, card, gateway support and delivery logic."""
from .errors import GiftLedgerError
from .identity import CallerIdentity, Scope

__all__ = ["CallerIdentity", "GiftLedgerError", "Scope"]
