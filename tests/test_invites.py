"""
Tests for invite reconciliation.
"""

import asyncio

import pytest

from chatclient.errors import StaleInvite
from chatclient.invites import InviteOutcome
from chatstore import MemoryDatabase, WriteBatch
from chatstore import paths


def _commits_by(db, user_id):
    return [batch for uid, batch in db.commits if uid == user_id]


def test_resolving_twice_is_idempotent(make_device):
    async def run():
        db = MemoryDatabase()
        alice = await make_device(db, "alice")
        bob = await make_device(db, "bob")
        cid = await alice.directory.create_conversation("bob")
        before = len(_commits_by(db, "bob"))

        first = await bob.invites.resolve(cid)
        second = await bob.invites.resolve(cid)
        return db, cid, first, second, len(_commits_by(db, "bob")) - before

    db, cid, first, second, commits = asyncio.run(run())
    assert first == InviteOutcome.ACCEPTED
    assert second == InviteOutcome.ALREADY_RESOLVED
    assert commits == 1
    assert asyncio.run(db.get(paths.membership("bob", cid))) is True
    assert asyncio.run(db.get(paths.invite("bob", cid))) is None


def test_concurrent_resolutions_share_one_task(make_device):
    async def run():
        db = MemoryDatabase()
        alice = await make_device(db, "alice")
        bob = await make_device(db, "bob")
        cid = await alice.directory.create_conversation("bob")
        before = len(_commits_by(db, "bob"))
        outcomes = await asyncio.gather(bob.invites.resolve(cid), bob.invites.resolve(cid))
        return outcomes, len(_commits_by(db, "bob")) - before

    outcomes, commits = asyncio.run(run())
    assert outcomes == [InviteOutcome.ACCEPTED, InviteOutcome.ACCEPTED]
    assert commits == 1


def test_two_devices_resolving_converge(make_device, second_device):
    async def run():
        db = MemoryDatabase()
        alice = await make_device(db, "alice")
        bob = await make_device(db, "bob")
        bob_phone = second_device(db, bob)
        cid = await alice.directory.create_conversation("bob")

        outcomes = await asyncio.gather(bob.invites.resolve(cid), bob_phone.invites.resolve(cid))
        return db, cid, outcomes

    db, cid, outcomes = asyncio.run(run())
    assert InviteOutcome.ACCEPTED in outcomes
    assert set(outcomes) <= {InviteOutcome.ACCEPTED, InviteOutcome.ALREADY_RESOLVED}
    assert asyncio.run(db.read(paths.memberships("bob"))) == {cid: True}
    assert asyncio.run(db.read(paths.invites("bob"))) == {}


def test_stale_invite_is_rejected(make_device):
    """An invite for a conversation that does not include the target is discarded"""
    async def run():
        db = MemoryDatabase()
        alice = await make_device(db, "alice")
        bob = await make_device(db, "bob")
        carol = await make_device(db, "carol")
        cid = await alice.directory.create_conversation("carol")

        # Carol points Bob at a conversation he is not part of
        await carol.store.commit(WriteBatch().set(paths.invite("bob", cid), {"from_id": "carol", "created_at": 1.0}))
        with pytest.raises(StaleInvite):
            await bob.directory.join(cid)
        return db, cid

    db, cid = asyncio.run(run())
    assert asyncio.run(db.get(paths.invite("bob", cid))) is None
    assert asyncio.run(db.get(paths.membership("bob", cid))) is None


def test_invite_for_missing_conversation_is_rejected(make_device):
    async def run():
        db = MemoryDatabase()
        await make_device(db, "carol")
        bob = await make_device(db, "bob")
        carol = bob.store.database.connect("carol")
        await carol.commit(WriteBatch().set(paths.invite("bob", "ghost"), {"from_id": "carol", "created_at": 1.0}))
        return db, await bob.invites.resolve("ghost")

    db, outcome = asyncio.run(run())
    assert outcome == InviteOutcome.REJECTED
    assert asyncio.run(db.read(paths.invites("bob"))) == {}


def test_resolve_pending_covers_every_invite(make_device):
    async def run():
        db = MemoryDatabase()
        alice = await make_device(db, "alice")
        carol = await make_device(db, "carol")
        bob = await make_device(db, "bob")
        first = await alice.directory.create_conversation("bob")
        second = await carol.directory.create_conversation("bob")
        return {first, second}, await bob.invites.resolve_pending(), await bob.invites.resolve_pending()

    cids, outcomes, again = asyncio.run(run())
    assert set(outcomes) == cids
    assert set(outcomes.values()) == {InviteOutcome.ACCEPTED}
    assert again == {}
