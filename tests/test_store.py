"""
Tests for follow-state and inbox storage
"""
import threading
from unittest.mock import MagicMock

import pytest

from fedsync import db
from fedsync.federation.locks import LocalKeyedLocks, RedisKeyedLocks, create_locks, lock_key
from fedsync.federation.store import FollowerStore
from fedsync.federation.types import FollowState, Relationship


REMOTE_ACTOR = 'https://remote.example/users/alice'


def pending(remote=REMOTE_ACTOR, local=1):
    return Relationship(local_actor_id=local, remote_actor_uri=remote, state=FollowState.PENDING)


class TestTransitions:

    def test_absent_relationship_reads_as_rejected(self, store):
        assert store.get_state(1, REMOTE_ACTOR) == FollowState.REJECTED

    def test_pending_then_accepted_then_removed(self, store):
        assert store.transition(pending(), FollowState.PENDING) == FollowState.PENDING
        assert store.transition(pending(), FollowState.ACCEPTED) == FollowState.ACCEPTED
        assert store.transition(pending(), FollowState.REJECTED) == FollowState.REJECTED
        assert store.get_state(1, REMOTE_ACTOR) == FollowState.REJECTED

    def test_pending_never_downgrades_accepted(self, store):
        store.accept(pending())
        assert store.transition(pending(), FollowState.PENDING) == FollowState.ACCEPTED

    def test_expected_state_guards_the_move(self, store):
        store.transition(pending(), FollowState.PENDING)
        store.accept(pending())
        # a pass that still thinks the follow is pending must not drop it
        assert store.transition(pending(), FollowState.REJECTED, expected=FollowState.PENDING) == \
            FollowState.ACCEPTED
        assert store.get_state(1, REMOTE_ACTOR) == FollowState.ACCEPTED

    def test_expected_missing_row(self, store):
        assert store.transition(pending(), FollowState.ACCEPTED, expected=FollowState.PENDING) == \
            FollowState.REJECTED
        assert store.get_state(1, REMOTE_ACTOR) == FollowState.REJECTED

    def test_one_row_per_pair(self, store):
        store.transition(pending(), FollowState.PENDING)
        store.accept(pending())
        store.accept(pending())
        assert len(store.get_accepted(1, 'https://remote.example')) == 1
        assert store.get_pending(1, 'https://remote.example') == []

    def test_get_by_authority_filters_state_and_host(self, store):
        store.transition(pending('https://remote.example/users/a'), FollowState.PENDING)
        store.accept(pending('https://remote.example/users/b'))
        store.accept(pending('https://remote.example.evil/users/c'))
        store.accept(pending('https://remote.example/users/d', local=2))

        assert [r.guid for r in store.get_pending(1, 'https://remote.example')] == ['https://remote.example/users/a']
        assert [r.guid for r in store.get_accepted(1, 'https://remote.example')] == ['https://remote.example/users/b']
        assert store.get_accepted(1, '') == []

    def test_failed_write_is_rolled_back(self, store):
        session = MagicMock(wraps=db.session)
        session.commit.side_effect = RuntimeError('db down')
        broken = FollowerStore(session=session, locks=LocalKeyedLocks())

        with pytest.raises(RuntimeError):
            broken.transition(pending(), FollowState.PENDING)

        session.rollback.assert_called_once()
        assert store.get_state(1, REMOTE_ACTOR) == FollowState.REJECTED

    def test_record_follow_keeps_the_outbox_guid(self, store):
        relationship = store.record_follow(1, REMOTE_ACTOR, 'https://local.example/activities/follow/1',
                                           {'type': 'Follow'})
        assert relationship.state == FollowState.PENDING
        outbox = store.get_outbox_follow('https://local.example/activities/follow/1')
        assert outbox.local_actor_id == 1
        assert outbox.object_id == REMOTE_ACTOR

    def test_follower_ids(self, store):
        store.accept(pending(local=3))
        store.accept(pending(local=1))
        store.transition(pending(local=2), FollowState.PENDING)
        assert store.get_follower_ids(REMOTE_ACTOR) == [1, 3]


class TestFollowers:

    def test_add_and_remove(self, store):
        assert store.add_follower(1, REMOTE_ACTOR, 'https://remote.example/follows/1') is True
        assert store.add_follower(1, REMOTE_ACTOR, 'https://remote.example/follows/2') is False
        assert store.get_followers_by_authority(1, 'https://remote.example') == [REMOTE_ACTOR]
        assert store.remove_follower(1, REMOTE_ACTOR) is True
        assert store.remove_follower(1, REMOTE_ACTOR) is False
        assert store.remove_follower(1, 'https://unknown.example/users/x') is False


class TestInboxStore:

    def activity(self, activity_id='https://remote.example/activities/1', **extra):
        data = {'id': activity_id, 'type': 'Create', 'actor': REMOTE_ACTOR,
                'object': {'id': 'https://remote.example/notes/1', 'type': 'Note', 'content': 'hi'}}
        data.update(extra)
        return data

    def test_add_once(self, inbox_store):
        assert inbox_store.add(self.activity(), [2, 1, 2]) is not None
        assert inbox_store.add(self.activity(), [1]) is None
        item = inbox_store.get('https://remote.example/activities/1')
        assert item.recipients == [1, 2]
        assert item.object_id == 'https://remote.example/notes/1'
        assert item.handled is False

    def test_activity_without_id_is_not_stored(self, inbox_store):
        assert inbox_store.add({'type': 'Like', 'actor': REMOTE_ACTOR}, [1]) is None

    def test_mark_handled(self, inbox_store):
        inbox_store.add(self.activity(), [1])
        inbox_store.mark_handled('https://remote.example/activities/1', True)
        assert inbox_store.get('https://remote.example/activities/1').handled is True

    def test_has_object(self, inbox_store):
        inbox_store.add(self.activity(), [1])
        inbox_store.add({'id': 'https://remote.example/likes/1', 'type': 'Like', 'actor': REMOTE_ACTOR,
                         'object': 'https://remote.example/notes/2'}, [1])
        assert inbox_store.has_object('https://remote.example/notes/1') is True
        assert inbox_store.has_object('https://remote.example/notes/2') is False
        assert inbox_store.has_object(None) is False

    def test_claim_handler_once(self, inbox_store):
        assert inbox_store.claim_handler('https://remote.example/activities/1', 'inbox:x') is True
        assert inbox_store.claim_handler('https://remote.example/activities/1', 'inbox:x') is False
        assert inbox_store.claim_handler('https://remote.example/activities/1', 'inbox:y') is True

    def test_recent_for(self, inbox_store):
        inbox_store.add(self.activity('https://remote.example/activities/1'), [1])
        inbox_store.add(self.activity('https://remote.example/activities/2'), [2])
        inbox_store.add(self.activity('https://remote.example/activities/3'), [1, 2])
        assert [item.activity_id for item in inbox_store.recent_for(1)] == [
            'https://remote.example/activities/3', 'https://remote.example/activities/1'
        ]


class TestLocks:

    def test_lock_key_is_per_pair(self):
        assert lock_key(1, REMOTE_ACTOR) == lock_key(1, REMOTE_ACTOR)
        assert lock_key(1, REMOTE_ACTOR) != lock_key(2, REMOTE_ACTOR)
        assert lock_key(1, REMOTE_ACTOR).startswith('lock:follow:1:')

    def test_local_locks_exclude_each_other(self):
        locks = LocalKeyedLocks()
        inside = []
        overlap = []

        def worker():
            with locks.hold(1, REMOTE_ACTOR):
                if inside:
                    overlap.append(True)
                inside.append(True)
                threading.Event().wait(0.01)
                inside.pop()

        threads = [threading.Thread(target=worker) for _ in range(5)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        assert overlap == []

    def test_local_locks_are_reentrant(self):
        locks = LocalKeyedLocks()
        with locks.hold(1, REMOTE_ACTOR):
            with locks.hold(1, REMOTE_ACTOR):
                pass

    def test_redis_locks(self):
        redis_client = MagicMock()
        locks = RedisKeyedLocks(redis_client, timeout=30, blocking_timeout=6)
        with locks.hold(1, REMOTE_ACTOR):
            pass
        redis_client.lock.assert_called_once_with(lock_key(1, REMOTE_ACTOR), timeout=30, blocking_timeout=6)

    def test_create_locks(self):
        app = MagicMock()
        app.config = {'FOLLOW_LOCK_BACKEND': 'local'}
        assert isinstance(create_locks(app), LocalKeyedLocks)
        app.config = {'FOLLOW_LOCK_BACKEND': 'redis', 'FOLLOW_LOCK_TIMEOUT': 30}
        assert isinstance(create_locks(app, MagicMock()), RedisKeyedLocks)
        with pytest.raises(ValueError):
            create_locks(app, None)
        app.config = {'FOLLOW_LOCK_BACKEND': 'zookeeper'}
        with pytest.raises(ValueError):
            create_locks(app)
