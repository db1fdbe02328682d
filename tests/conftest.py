import asyncio
from datetime import datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import config
from models import Base, User, MatrixLevelConfig, MatrixPosition
from mlm_system.errors import LedgerError, LedgerUnavailable
from mlm_system.events.event_bus import eventBus
from mlm_system.services.ledger_service import Ledger
from mlm_system.services.placement_service import frontierCache
from mlm_system.utils.time_machine import timeMachine

START_TIME = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def engine_defaults(monkeypatch):
    monkeypatch.setattr(config, "RESERVE_PERCENTAGE", Decimal("0"))
    monkeypatch.setattr(config, "ALLOW_SPONSOR_LOOKUP", True)
    monkeypatch.setattr(config, "SPONSOR_LOOKUP_DEPTH", 5)
    monkeypatch.setattr(config, "ORPHAN_PLACEMENT", "global")
    monkeypatch.setattr(config, "ROOT_POLICY", "open")
    monkeypatch.setattr(config, "PLACEMENT_SEARCH_DEPTH", 0)
    monkeypatch.setattr(config, "MAX_CASCADE_DEPTH", 10)
    monkeypatch.setattr(config, "CRON_BATCH_SIZE", 24)
    monkeypatch.setattr(config, "CRON_STUCK_AFTER", 1800)
    monkeypatch.setattr(config, "LEDGER_TIMEOUT", 1)
    monkeypatch.setattr(config, "SYSTEM_USERNAME", "admin")
    monkeypatch.setattr(config, "CROSS_ENTRY_SPACING", 0)
    monkeypatch.setattr(config, "PAY_REENTRY_REFERRAL", True)
    monkeypatch.setattr(config, "MATCHING_REQUIRES_POSITION", False)

    eventBus.clear()
    frontierCache.invalidate()
    timeMachine.setTime(START_TIME)
    yield
    eventBus.clear()
    frontierCache.invalidate()
    timeMachine.resetToRealTime()


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool
    )
    Base.metadata.create_all(engine)
    yield sessionmaker(bind=engine)
    engine.dispose()


@pytest.fixture
def session(session_factory):
    with session_factory() as session:
        yield session


@pytest.fixture
def make_user(session):
    def _make_user(username, sponsor=None, status="active"):
        user = User(
            username=username,
            sponsorID=sponsor.userID if sponsor else None,
            status=status,
            balancePassive=Decimal("0"),
            reserveBalance=Decimal("0"),
            totalEarnings=Decimal("0")
        )
        session.add(user)
        session.commit()
        return user

    return _make_user


@pytest.fixture
def make_level(session):
    def _make_level(level=1, price="100", width=2, depth=2, referral="10", matrix="30", **fields):
        levelConfig = MatrixLevelConfig(
            level=level,
            price=Decimal(price),
            width=width,
            depth=depth,
            referralBonusPct=Decimal(referral),
            matrixBonusPct=Decimal(matrix),
            matchingBonusPct=Decimal(fields.pop("matching", "0")),
            reentryEnabled=fields.pop("reentryEnabled", False),
            reentryCount=fields.pop("reentryCount", 1),
            positionsFilled=0,
            isActive=True,
            **fields
        )
        session.add(levelConfig)
        session.commit()
        return levelConfig

    return _make_level


@pytest.fixture
def add_position(session):
    """Insert a position row directly, bypassing the allocator."""

    def _add_position(user, level, parent=None, slot=None):
        position = MatrixPosition(
            userID=user.userID,
            username=user.username,
            sponsorID=user.sponsorID,
            level=level,
            parentPositionID=parent.positionID if parent else None,
            slotIndex=slot,
            treeDepth=parent.treeDepth + 1 if parent else 0,
            positionPath=(list(parent.positionPath) + [parent.positionID]) if parent else [],
            createdAt=timeMachine.now,
            status="active",
            totalEarned=Decimal("0"),
            cycleCount=0
        )
        session.add(position)
        session.commit()
        return position

    return _add_position


class RecordingLedger(Ledger):
    """In-memory ledger double that can fail, time out or reject per user."""

    def __init__(self, rejected=(), unavailable=(), slow=()):
        self.records = {}
        self.calls = []
        self.rejected = set(rejected)
        self.unavailable = set(unavailable)
        self.slow = set(slow)

    async def findTransaction(self, referenceId, kind):
        return self.records.get((referenceId, kind.value))

    async def credit(self, userId, amount, kind, referenceId, meta=None):
        self.calls.append((userId, amount, kind.value, referenceId))
        if userId in self.slow:
            await asyncio.sleep(5)
        if userId in self.unavailable:
            raise LedgerUnavailable(f"ledger down for {userId}")
        if userId in self.rejected:
            raise LedgerError(f"account {userId} rejected")

        record = {"userId": userId, "amount": amount, "kind": kind.value, "referenceId": referenceId}
        self.records[(referenceId, kind.value)] = record
        return record

    def total(self, userId, kind=None):
        return sum(
            (record["amount"] for record in self.records.values()
             if record["userId"] == userId and (kind is None or record["kind"] == kind)),
            Decimal("0")
        )


@pytest.fixture
def make_ledger():
    return RecordingLedger
