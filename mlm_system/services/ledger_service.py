# mlm_system/services/ledger_service.py
"""
Ledger - records commission credits and updates member balances.
"""
from abc import ABC, abstractmethod
from decimal import Decimal, ROUND_DOWN
from typing import Dict, Optional
from sqlalchemy.orm import Session
from sqlalchemy.exc import IntegrityError, OperationalError
import logging

import config
from models import User, Bonus
from mlm_system.config.matrix import CommissionKind, HUNDRED, CENT
from mlm_system.errors import LedgerError, LedgerUnavailable

logger = logging.getLogger(__name__)


def positionReference(positionId: int, userId: int) -> str:
    """Idempotency key of a credit: one per (position, beneficiary) and kind."""
    return f"position={positionId};user={userId}"


class Ledger(ABC):
    """Interface of the payments collaborator."""

    @abstractmethod
    async def credit(
            self,
            userId: int,
            amount: Decimal,
            kind: CommissionKind,
            referenceId: str,
            meta: Optional[Dict] = None
    ) -> Bonus:
        ...

    @abstractmethod
    async def findTransaction(self, referenceId: str, kind: CommissionKind) -> Optional[Bonus]:
        ...


class DatabaseLedger(Ledger):
    """Ledger backed by the bonuses table and user balances."""

    def __init__(self, session: Session):
        self.session = session

    async def findTransaction(self, referenceId: str, kind: CommissionKind) -> Optional[Bonus]:
        return self.session.query(Bonus).filter_by(
            referenceID=referenceId,
            commissionType=kind.value
        ).first()

    async def credit(
            self,
            userId: int,
            amount: Decimal,
            kind: CommissionKind,
            referenceId: str,
            meta: Optional[Dict] = None
    ) -> Bonus:
        """
        Write the bonus record and the balance update in one transaction.

        A concurrent duplicate hits the unique (referenceID, commissionType)
        constraint and the already stored record is returned instead.
        """
        meta = meta or {}
        amount = Decimal(str(amount)).quantize(CENT, rounding=ROUND_DOWN)

        user = self.session.query(User).filter_by(userID=userId).first()
        if not user:
            raise LedgerError(f"Account of user {userId} not found")
        if user.status == "blocked":
            raise LedgerError(f"Account of user {userId} is blocked")

        reservePct = Decimal(str(config.RESERVE_PERCENTAGE))
        reserveAmount = (amount * reservePct / HUNDRED).quantize(CENT, rounding=ROUND_DOWN)

        bonus = Bonus()
        bonus.userID = userId
        bonus.downlineID = meta.get("downlineId")
        bonus.positionID = meta.get("positionId")
        bonus.referenceID = referenceId
        bonus.commissionType = kind.value
        bonus.level = meta.get("level")
        bonus.uplineLevel = meta.get("depth")
        bonus.bonusRate = float(meta.get("rate", 0))
        bonus.bonusAmount = amount
        bonus.reserveAmount = reserveAmount
        bonus.status = "paid"
        bonus.notes = meta.get("notes")

        try:
            self.session.add(bonus)

            user.balancePassive = (user.balancePassive or Decimal("0")) + amount - reserveAmount
            user.reserveBalance = (user.reserveBalance or Decimal("0")) + reserveAmount
            user.totalEarnings = (user.totalEarnings or Decimal("0")) + amount

            self.session.commit()
        except IntegrityError:
            self.session.rollback()
            existing = await self.findTransaction(referenceId, kind)
            if existing is None:
                raise
            logger.info(f"Duplicate {kind.value} credit {referenceId} ignored")
            return existing
        except OperationalError as e:
            self.session.rollback()
            raise LedgerUnavailable(f"Ledger write failed: {e}") from e

        logger.info(
            f"Credited {kind.value} {amount} to user {userId} "
            f"(reserve {reserveAmount}, ref {referenceId})"
        )
        return bonus
