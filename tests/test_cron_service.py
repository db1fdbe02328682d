import asyncio
from decimal import Decimal

from sqlalchemy import func

import config
from models import Bonus, CronLockState, MatrixPosition, QueueEntry, User
from mlm_system.config.matrix import EntryType
from mlm_system.events.event_bus import eventBus, MatrixEvents
from mlm_system.services.cron_service import CronService, CronScheduler
from mlm_system.services.queue_service import QueueService
from mlm_system.utils.time_machine import timeMachine


def run_queue(session, ledger=None):
    return asyncio.run(CronService(session, ledger).processVerifierQueue())


def enqueue(session, user, level=1, sponsorHint=None):
    entry = QueueService(session).enqueue(user, level, EntryType.NEW, sponsorHint)
    session.commit()
    return entry


def test_two_entries_cycle_the_sponsor(session, make_user, make_level, add_position):
    make_level(price="100", width=2, depth=1, referral="10", matrix="30")
    s = make_user("s")
    a = make_user("a", s)
    b = make_user("b", s)
    root = add_position(s, 1)
    enqueue(session, a)
    last = enqueue(session, b)

    result = run_queue(session)

    assert result["success"] is True
    assert result["processed"] == 2
    assert result["cycles"] == 1

    children = session.query(MatrixPosition).filter_by(parentPositionID=root.positionID) \
        .order_by(MatrixPosition.slotIndex).all()
    assert [child.userID for child in children] == [a.userID, b.userID]

    session.refresh(root)
    assert root.status == "completed"

    credited = session.query(func.sum(Bonus.bonusAmount)).filter_by(userID=s.userID).scalar()
    assert Decimal(str(credited)) == Decimal("50.00")
    assert session.get(User, s.userID).totalEarnings == Decimal("50.00")

    lock = session.get(CronLockState, 1)
    assert lock.active is False
    assert lock.state == "idle"
    assert lock.lastProcessedEntryID == last.entryID
    assert asyncio.run(QueueService(session).countPending()) == 0


def test_replay_creates_no_new_transactions(session, make_user, make_level, add_position):
    make_level(price="100", width=2, depth=1)
    s = make_user("s")
    add_position(s, 1)
    enqueue(session, make_user("a", s))
    enqueue(session, make_user("b", s))
    run_queue(session)
    bonuses = session.query(Bonus).count()
    positions = session.query(MatrixPosition).count()

    # Nothing pending
    run_queue(session)
    # Entries handed back as if the finalize step had been lost
    session.query(QueueEntry).update({QueueEntry.processed: False})
    session.commit()
    result = run_queue(session)

    assert result["processed"] == 2
    assert session.query(Bonus).count() == bonuses
    assert session.query(MatrixPosition).count() == positions


def test_second_start_is_rejected(session):
    cron = CronService(session)

    first = asyncio.run(cron.start())
    second = asyncio.run(cron.start())

    assert first["success"] is True
    assert second == {"success": False, "error": "AlreadyRunning", "status": 409, "state": "running"}


def test_validation_failure_advances_past_entry(session, make_user, make_level):
    make_level()
    alice = make_user("alice")
    bob = make_user("bob")
    bad = enqueue(session, alice, level=9)
    good = enqueue(session, bob)
    failures = []
    eventBus.subscribe(MatrixEvents.ENTRY_FAILED, failures.append)

    result = run_queue(session)

    assert result["failed"] == 1
    assert result["processed"] == 1
    session.refresh(bad)
    session.refresh(good)
    assert bad.processed is True
    assert bad.status == "failed"
    assert "level 9" in bad.failureReason
    assert good.status == "done"
    assert [failure["entryId"] for failure in failures] == [bad.entryID]
    assert session.get(CronLockState, 1).lastProcessedEntryID == good.entryID


def test_sponsor_hint_overrides_stored_sponsor(session, make_user, make_level, add_position):
    make_level()
    old = make_user("old")
    new = make_user("new")
    add_position(old, 1)
    new_root = add_position(new, 1)
    alice = make_user("alice", old)
    enqueue(session, alice, sponsorHint="new")

    run_queue(session)

    position = session.query(MatrixPosition).filter_by(userID=alice.userID).one()
    assert position.parentPositionID == new_root.positionID
    assert session.get(User, alice.userID).sponsorID == new.userID


def test_unknown_sponsor_hint_fails_entry(session, make_user, make_level):
    make_level()
    entry = enqueue(session, make_user("alice"), sponsorHint="ghost")

    result = run_queue(session)

    assert result["failed"] == 1
    session.refresh(entry)
    assert entry.status == "failed"
    assert session.query(MatrixPosition).count() == 0


def test_transient_failure_keeps_entry_pending(session, make_user, make_level, make_ledger, add_position):
    make_level(price="100", width=2, depth=2)
    s = make_user("s")
    add_position(s, 1)
    first = enqueue(session, make_user("a", s))
    second = enqueue(session, make_user("b", s))

    result = run_queue(session, make_ledger(unavailable={s.userID}))

    assert result["deferred"] == 1
    assert result["processed"] == 0
    session.refresh(first)
    session.refresh(second)
    assert first.processed is False
    assert first.positionID is not None
    assert first.attempts == 1
    assert second.positionID is None
    lock = session.get(CronLockState, 1)
    assert lock.active is False
    assert "entry" in lock.lastError

    ledger = make_ledger()
    result = run_queue(session, ledger)

    assert result["processed"] == 2
    assert session.query(MatrixPosition).filter_by(userID=first.userID).count() == 1
    assert ledger.total(s.userID, "referral") == Decimal("20.00")


def test_structural_error_leaves_lock_stuck(session, make_user, make_level, add_position):
    make_level(width=2, depth=2)
    s = make_user("s")
    root = add_position(s, 1)
    for slot in range(3):
        add_position(make_user(f"c{slot}", s), 1, parent=root, slot=slot)
    entry = enqueue(session, make_user("late", s))
    stuck = []
    eventBus.subscribe(MatrixEvents.CRON_STUCK, stuck.append)

    result = run_queue(session)

    assert result["success"] is False
    assert result["stuck"] is True
    lock = session.get(CronLockState, 1)
    assert lock.active is True
    assert lock.state == "stuck"
    assert [event["entryId"] for event in stuck] == [entry.entryID]
    session.refresh(entry)
    assert entry.processed is False

    assert run_queue(session)["error"] == "AlreadyRunning"

    unlocked = asyncio.run(CronService(session).forceUnlock())
    assert unlocked == {"success": True, "previousState": "stuck"}
    session.refresh(lock)
    assert lock.active is False
    assert lock.state == "idle"
    assert lock.lastProcessedEntryID is None


def test_batch_size_limits_a_run(session, make_user, make_level, monkeypatch):
    monkeypatch.setattr(config, "CRON_BATCH_SIZE", 2)
    make_level()
    for i in range(3):
        enqueue(session, make_user(f"u{i}"))

    assert run_queue(session)["processed"] == 2
    assert asyncio.run(QueueService(session).countPending()) == 1
    assert run_queue(session)["processed"] == 1


def test_long_running_lock_is_reported_stuck(session):
    cron = CronService(session)
    asyncio.run(cron.start())

    assert asyncio.run(cron.getStatus())["state"] == "running"

    timeMachine.advanceTime(seconds=config.CRON_STUCK_AFTER + 1)
    status = asyncio.run(cron.getStatus())
    assert status["state"] == "stuck"
    assert status["active"] is True


def test_scheduler_tick_processes_queue(session_factory, session, make_user, make_level):
    make_level()
    enqueue(session, make_user("alice"))

    result = asyncio.run(CronScheduler(session_factory, interval=1).tick())

    assert result["processed"] == 1
    session.expire_all()
    assert session.query(QueueEntry).filter_by(processed=False).count() == 0


def test_reentry_entries_skip_referral_when_disabled(session, make_user, make_level, add_position, monkeypatch):
    monkeypatch.setattr(config, "PAY_REENTRY_REFERRAL", False)
    make_level(price="100", referral="10")
    s = make_user("s")
    add_position(s, 1)
    a = make_user("a", s)
    b = make_user("b", s)
    QueueService(session).enqueue(a, 1, EntryType.REENTRY)
    QueueService(session).enqueue(b, 1, EntryType.NEW)
    session.commit()

    result = run_queue(session)

    assert result["processed"] == 2
    bonuses = session.query(Bonus).filter_by(userID=s.userID, commissionType="referral").all()
    assert [bonus.downlineID for bonus in bonuses] == [b.userID]
