import asyncio
from collections import Counter

import pytest

import config
from models import MatrixPosition, MatrixLevelConfig
from mlm_system.errors import InvalidLevel, SponsorNotFound, LevelFull, TreeInconsistency
from mlm_system.events.event_bus import eventBus, MatrixEvents
from mlm_system.services.placement_service import PlacementService


def place(session, user, level=1, sponsor=None):
    return asyncio.run(PlacementService(session).placePosition(user, level, sponsor))


def test_first_entrant_becomes_root(session, make_user, make_level):
    make_level()
    sponsor = make_user("sponsor")

    position = place(session, sponsor)

    assert position.parentPositionID is None
    assert position.slotIndex is None
    assert position.treeDepth == 0
    assert position.positionPath == []
    # Roots do not occupy a slot
    assert session.get(MatrixLevelConfig, 1).positionsFilled == 0


def test_breadth_first_fill_order(session, make_user, make_level):
    make_level(width=2, depth=2)
    sponsor = make_user("sponsor")
    root = place(session, sponsor)

    placed = [place(session, make_user(f"u{i}", sponsor), sponsor=sponsor) for i in range(1, 5)]

    assert [(p.parentPositionID, p.slotIndex) for p in placed[:2]] == [
        (root.positionID, 0),
        (root.positionID, 1),
    ]
    assert [(p.parentPositionID, p.slotIndex) for p in placed[2:]] == [
        (placed[0].positionID, 0),
        (placed[0].positionID, 1),
    ]
    assert placed[3].positionPath == [root.positionID, placed[0].positionID]
    assert placed[3].treeDepth == 2

    levelConfig = session.get(MatrixLevelConfig, 1)
    assert levelConfig.positionsFilled == 4
    assert levelConfig.positionsFilled <= levelConfig.maxPositions


def test_slots_are_unique_and_width_is_respected(session, make_user, make_level):
    make_level(width=3, depth=2)
    sponsor = make_user("sponsor")
    place(session, sponsor)

    for i in range(20):
        place(session, make_user(f"u{i}", sponsor), sponsor=sponsor)

    positions = session.query(MatrixPosition).filter(MatrixPosition.parentPositionID.isnot(None)).all()
    pairs = Counter((p.parentPositionID, p.slotIndex) for p in positions)
    children = Counter(p.parentPositionID for p in positions)

    assert max(pairs.values()) == 1
    assert max(children.values()) <= 3
    # Breadth-first: depth never decreases in placement order
    depths = [p.treeDepth for p in sorted(positions, key=lambda p: p.positionID)]
    assert depths == sorted(depths)


def test_search_picks_up_slots_taken_through_other_sponsors(session, make_user, make_level):
    make_level(width=2, depth=2)
    sponsor = make_user("sponsor")
    root = place(session, sponsor)
    first = place(session, make_user("a", sponsor), sponsor=sponsor)
    second_user = make_user("b", sponsor)
    second = place(session, second_user, sponsor=sponsor)

    # Fills second's slot 0 outside of sponsor's cached frontier
    place(session, make_user("x", second_user), sponsor=second_user)

    y = place(session, make_user("y", sponsor), sponsor=sponsor)
    z = place(session, make_user("z", sponsor), sponsor=sponsor)
    w = place(session, make_user("w", sponsor), sponsor=sponsor)

    assert (y.parentPositionID, y.slotIndex) == (first.positionID, 0)
    assert (z.parentPositionID, z.slotIndex) == (first.positionID, 1)
    assert (w.parentPositionID, w.slotIndex) == (second.positionID, 1)
    assert root.positionID in w.positionPath


def test_sponsorless_entrant_goes_to_global_pool(session, make_user, make_level):
    make_level()
    founder = make_user("founder")
    root = place(session, founder)

    orphan = place(session, make_user("orphan"))

    assert orphan.parentPositionID == root.positionID


def test_sponsor_lookup_walks_up_to_positioned_upline(session, make_user, make_level):
    make_level()
    top = make_user("top")
    root = place(session, top)
    mid = make_user("mid", top)

    position = place(session, make_user("newbie", mid), sponsor=mid)

    assert position.parentPositionID == root.positionID
    assert position.sponsorID == mid.userID


def test_sponsor_without_position_rejected_by_policy(session, make_user, make_level, monkeypatch):
    monkeypatch.setattr(config, "ALLOW_SPONSOR_LOOKUP", False)
    monkeypatch.setattr(config, "ORPHAN_PLACEMENT", "reject")
    make_level()
    place(session, make_user("founder"))
    mid = make_user("mid")

    with pytest.raises(SponsorNotFound):
        place(session, make_user("newbie", mid), sponsor=mid)

    assert session.query(MatrixPosition).count() == 1


def test_sponsor_without_position_uses_global_pool(session, make_user, make_level, monkeypatch):
    monkeypatch.setattr(config, "ALLOW_SPONSOR_LOOKUP", False)
    make_level()
    root = place(session, make_user("founder"))
    mid = make_user("mid")

    position = place(session, make_user("newbie", mid), sponsor=mid)

    assert position.parentPositionID == root.positionID


def test_unknown_level_is_invalid(session, make_user, make_level):
    make_level()

    with pytest.raises(InvalidLevel):
        place(session, make_user("alice"), level=9)


def test_inactive_level_is_invalid(session, make_user, make_level):
    levelConfig = make_level()
    levelConfig.isActive = False
    session.commit()

    with pytest.raises(InvalidLevel):
        place(session, make_user("alice"))


def test_bounded_search_with_single_root_is_level_full(session, make_user, make_level, monkeypatch):
    monkeypatch.setattr(config, "ROOT_POLICY", "single")
    monkeypatch.setattr(config, "PLACEMENT_SEARCH_DEPTH", 1)
    make_level(width=1, depth=1)
    sponsor = make_user("sponsor")
    root = place(session, sponsor)
    a = place(session, make_user("a", sponsor), sponsor=sponsor)
    b = place(session, make_user("b", sponsor), sponsor=sponsor)

    assert a.parentPositionID == root.positionID
    assert b.parentPositionID == a.positionID

    with pytest.raises(LevelFull):
        place(session, make_user("c", sponsor), sponsor=sponsor)


def test_bounded_search_with_open_roots_starts_new_tree(session, make_user, make_level, monkeypatch):
    monkeypatch.setattr(config, "PLACEMENT_SEARCH_DEPTH", 1)
    make_level(width=1, depth=1)
    sponsor = make_user("sponsor")
    place(session, sponsor)
    place(session, make_user("a", sponsor), sponsor=sponsor)
    place(session, make_user("b", sponsor), sponsor=sponsor)

    c = place(session, make_user("c", sponsor), sponsor=sponsor)

    assert c.parentPositionID is None


def test_overfull_parent_is_structural_error(session, make_user, make_level, add_position):
    make_level(width=2, depth=2)
    sponsor = make_user("sponsor")
    root = add_position(sponsor, 1)
    for slot in range(3):
        add_position(make_user(f"c{slot}", sponsor), 1, parent=root, slot=slot)

    with pytest.raises(TreeInconsistency):
        place(session, make_user("late", sponsor), sponsor=sponsor)


def test_placement_event_is_published(session, make_user, make_level):
    make_level()
    events = []
    eventBus.subscribe(MatrixEvents.POSITION_PLACED, events.append)

    position = place(session, make_user("alice"))

    assert events == [{
        "positionId": position.positionID,
        "userId": position.userID,
        "level": 1,
        "parentPositionId": None,
        "slotIndex": None
    }]
