"""Model module imports for SQLAlchemy metadata registration."""

from __future__ import annotations

import logging

from backend.db.models.ledger import TreasuryTransaction
from backend.db.models.treasury import Treasury, TreasuryWhitelist

logger = logging.getLogger(__name__)

__all__ = [
    "Treasury",
    "TreasuryTransaction",
    "TreasuryWhitelist",
]
