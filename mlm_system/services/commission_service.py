# mlm_system/services/commission_service.py
"""
Commission service - referral cascade, cycle and matching bonuses.
"""
import asyncio
from decimal import Decimal, ROUND_DOWN
from typing import List, Dict, Optional
from sqlalchemy.orm import Session
import logging

import config
from models import User, MatrixPosition, MatrixLevelConfig
from mlm_system.config.matrix import CommissionKind, EntryType, PositionStatus, HUNDRED, CENT
from mlm_system.errors import LedgerError, LedgerUnavailable, TransientError, TreeInconsistency
from mlm_system.events.event_bus import eventBus, MatrixEvents
from mlm_system.events.notifications import flagForReview
from mlm_system.services.ledger_service import Ledger, DatabaseLedger, positionReference
from mlm_system.services.level_service import LevelService
from mlm_system.services.sponsor_service import SponsorService

logger = logging.getLogger(__name__)


class CommissionService:
    """Service for crediting matrix commissions through the ledger."""

    def __init__(self, session: Session, ledger: Optional[Ledger] = None):
        self.session = session
        self.ledger = ledger or DatabaseLedger(session)
        self.sponsorService = SponsorService(session)

    async def processPlacement(self, position: MatrixPosition, entryType: Optional[EntryType] = None) -> Dict:
        """
        Credit the referral cascade for a new position.

        Every credit is attempted even when an earlier one fails. Rejected
        credits are flagged for review, transient failures are raised after
        the walk so the entry is retried; already paid credits are skipped.
        """
        levelConfig = self._getLevelConfig(position.level)
        owner = self.session.query(User).filter_by(userID=position.userID).first()

        results = self._newResults(position)
        if entryType == EntryType.REENTRY and not config.PAY_REENTRY_REFERRAL:
            logger.info(f"Re-entry position {position.positionID} pays no referral cascade")
            return results

        if not owner:
            logger.error(f"Owner {position.userID} of position {position.positionID} not found")
            return results

        percentages = LevelService.referralPercentages(levelConfig)[:config.MAX_CASCADE_DEPTH]
        chain = self.sponsorService.findSponsorChain(owner, len(percentages))

        transient = []
        for depth, (beneficiary, percentage) in enumerate(zip(chain, percentages), start=1):
            if percentage <= 0:
                continue

            amount = Decimal(str(levelConfig.price)) * percentage / HUNDRED
            await self._attempt(
                results, transient, beneficiary, amount, CommissionKind.REFERRAL,
                position, depth, percentage, requireActive=True,
                notes=f"Level {depth} referral for position {position.positionID}"
            )

        self._finish(results, transient, position)
        return results

    async def payCycle(self, position: MatrixPosition, levelConfig: MatrixLevelConfig) -> Dict:
        """Cycle bonus to the position owner and matching bonus to the owner's sponsor."""
        results = self._newResults(position)
        transient = []

        owner = self.session.query(User).filter_by(userID=position.userID).first()
        if not owner:
            logger.error(f"Owner {position.userID} of cycled position {position.positionID} not found")
            await flagForReview(
                self.session,
                f"Cycle bonus for position {position.positionID} not paid",
                f"owner {position.userID} not found"
            )
            return results

        price = Decimal(str(levelConfig.price))

        cyclePct = Decimal(str(levelConfig.matrixBonusPct or 0))
        if cyclePct > 0:
            await self._attempt(
                results, transient, owner, price * cyclePct / HUNDRED, CommissionKind.CYCLE,
                position, 0, cyclePct, requireActive=False,
                notes=f"Cycle {position.cycleCount} of position {position.positionID}"
            )

        matchingPct = Decimal(str(levelConfig.matchingBonusPct or 0))
        if matchingPct > 0:
            sponsor = self.sponsorService.findSponsor(owner)
            if sponsor and not self._inMatrix(sponsor, position.level):
                logger.info(f"Sponsor {sponsor.userID} holds no active level {position.level} position, matching skipped")
                results["skipped"].append({
                    "userId": sponsor.userID,
                    "type": CommissionKind.MATCHING.value,
                    "reason": "not in matrix"
                })
            elif sponsor:
                await self._attempt(
                    results, transient, sponsor, price * matchingPct / HUNDRED, CommissionKind.MATCHING,
                    position, 1, matchingPct, requireActive=True,
                    notes=f"Matching bonus for cycle of {owner.username}"
                )

        self._finish(results, transient, position)
        return results

    def _inMatrix(self, user: User, level: int) -> bool:
        if not config.MATCHING_REQUIRES_POSITION:
            return True
        return self.session.query(MatrixPosition.positionID).filter_by(
            userID=user.userID,
            level=level,
            status=PositionStatus.ACTIVE.value
        ).first() is not None

    def _getLevelConfig(self, level: int) -> MatrixLevelConfig:
        # Deactivated levels still pay for positions that already exist
        levelConfig = self.session.query(MatrixLevelConfig).filter_by(level=level).first()
        if not levelConfig:
            raise TreeInconsistency(f"Level {level} configuration missing for existing positions")
        return levelConfig

    @staticmethod
    def _newResults(position: MatrixPosition) -> Dict:
        return {
            "success": True,
            "positionId": position.positionID,
            "commissions": [],
            "skipped": [],
            "failed": [],
            "totalDistributed": Decimal("0")
        }

    def _finish(self, results: Dict, transient: List[str], position: MatrixPosition):
        logger.info(
            f"Position {position.positionID}: {len(results['commissions'])} credits, "
            f"total {results['totalDistributed']}, {len(results['skipped'])} skipped, "
            f"{len(results['failed'])} failed"
        )
        if transient:
            results["success"] = False
            raise TransientError(
                f"{len(transient)} credits for position {position.positionID} deferred: "
                f"{'; '.join(transient)}"
            )

    async def _attempt(
            self,
            results: Dict,
            transient: List[str],
            beneficiary: User,
            amount: Decimal,
            kind: CommissionKind,
            position: MatrixPosition,
            depth: int,
            percentage: Decimal,
            requireActive: bool,
            notes: str
    ):
        """Credit one beneficiary, recording the outcome instead of raising."""
        userId = beneficiary.userID
        try:
            commission = await self._creditOnce(
                beneficiary, amount, kind, position, depth, percentage, requireActive, notes
            )
        except TransientError as e:
            logger.warning(f"Deferred {kind.value} credit to user {userId}: {e}")
            transient.append(str(e))
            return
        except LedgerError as e:
            logger.error(f"Ledger rejected {kind.value} credit to user {userId}: {e}")
            results["failed"].append({"userId": userId, "type": kind.value, "error": str(e)})
            await flagForReview(
                self.session,
                f"{kind.value.capitalize()} credit for position {position.positionID} not paid",
                f"user {userId}: {e}"
            )
            return

        if commission.get("skipped"):
            results["skipped"].append(commission)
        else:
            results["commissions"].append(commission)
            results["totalDistributed"] += commission["amount"]

    async def _creditOnce(
            self,
            beneficiary: User,
            amount: Decimal,
            kind: CommissionKind,
            position: MatrixPosition,
            depth: int,
            percentage: Decimal,
            requireActive: bool,
            notes: str
    ) -> Dict:
        """At-most-once credit keyed by (position, beneficiary, kind)."""
        amount = amount.quantize(CENT, rounding=ROUND_DOWN)
        commission = {
            "userId": beneficiary.userID,
            "amount": amount,
            "type": kind.value,
            "depth": depth,
            "percentage": percentage
        }

        if requireActive and beneficiary.status != "active":
            logger.info(f"User {beneficiary.userID} is {beneficiary.status}, {kind.value} credit skipped")
            commission.update(skipped=True, reason="inactive")
            return commission

        reference = positionReference(position.positionID, beneficiary.userID)
        existing = await self.ledger.findTransaction(reference, kind)
        if existing:
            logger.debug(f"{kind.value} credit {reference} already recorded")
            commission.update(skipped=True, reason="duplicate")
            return commission

        if kind == CommissionKind.CYCLE:
            position.totalEarned = Decimal(str(position.totalEarned or 0)) + amount

        try:
            record = await asyncio.wait_for(
                self.ledger.credit(
                    beneficiary.userID, amount, kind, reference,
                    meta={
                        "downlineId": position.userID,
                        "positionId": position.positionID,
                        "level": position.level,
                        "depth": depth,
                        "rate": percentage,
                        "notes": notes
                    }
                ),
                timeout=config.LEDGER_TIMEOUT
            )
            self.session.commit()
        except asyncio.TimeoutError:
            self.session.rollback()
            raise LedgerUnavailable(f"Ledger timed out after {config.LEDGER_TIMEOUT}s on {reference}")
        except Exception:
            self.session.rollback()
            raise

        commission["transactionId"] = getattr(record, "bonusID", None)

        await eventBus.emit(MatrixEvents.BONUS_AWARDED, {
            "userId": beneficiary.userID,
            "positionId": position.positionID,
            "level": position.level,
            "type": kind.value,
            "amount": amount
        })

        return commission
