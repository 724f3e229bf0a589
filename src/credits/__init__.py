# src/credits/__init__.py
from __future__ import annotations

from .ledger import CreditAccount, CreditLedger, CreditTransaction

__all__ = ["CreditAccount", "CreditLedger", "CreditTransaction"]
