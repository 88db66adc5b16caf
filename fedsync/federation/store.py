"""
Actor, follow-state and inbox storage.

The federation core only talks to storage through these two classes. Writes to the follow state of a pair
happen under the pair's lock and commit before the lock is released.
"""
from __future__ import annotations
import json
import logging
from typing import Any, Dict, Iterable, List, Optional

from flask import current_app
from sqlalchemy import select, delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from fedsync import db
from fedsync.federation.types import FollowState, Relationship
from fedsync.models import RemoteActor, FollowRelationship, Follower, OutboxActivity, InboxActivity, HandlerRun
from fedsync.utils import get_url_authority, object_to_uri

logger = logging.getLogger(__name__)


class FollowerStore:
    """Follow state between local actors and remote actors, in both directions"""

    def __init__(self, session: Optional[Session] = None, locks=None):
        self.session = session if session is not None else db.session
        self.locks = locks if locks is not None else current_app.extensions['fedsync.locks']

    # remote actors

    def get_remote_actor(self, guid: str) -> Optional[RemoteActor]:
        return self.session.execute(select(RemoteActor).where(RemoteActor.guid == guid)).scalar_one_or_none()

    def get_or_create_remote_actor(self, guid: str, **fields) -> RemoteActor:
        actor = self.get_remote_actor(guid)
        if actor is None:
            actor = RemoteActor(guid=guid)
            self.session.add(actor)
        for name, value in fields.items():
            if value is not None:
                setattr(actor, name, value)
        self.session.flush()
        return actor

    # local actor follows remote actor

    def get_by_authority(self, local_actor_id: int, authority: str,
                         state: FollowState = FollowState.ACCEPTED) -> List[Relationship]:
        """Relationships of a local actor in `state` whose remote actor guid lives under `authority`, newest first"""
        if not authority:
            return []
        rows = self.session.execute(
            select(FollowRelationship, RemoteActor.guid)
            .join(RemoteActor, FollowRelationship.remote_actor_id == RemoteActor.id)
            .where(FollowRelationship.local_actor_id == local_actor_id,
                   FollowRelationship.state == state.value,
                   RemoteActor.guid.startswith(authority, autoescape=True))
            .order_by(FollowRelationship.id.desc())
        ).all()
        # startswith alone would let https://example.com match https://example.com.evil
        return [Relationship(local_actor_id=row.local_actor_id, remote_actor_uri=guid,
                             state=FollowState(row.state), remote_actor_id=row.remote_actor_id)
                for row, guid in rows if get_url_authority(guid) == authority]

    def get_pending(self, local_actor_id: int, authority: str) -> List[Relationship]:
        return self.get_by_authority(local_actor_id, authority, FollowState.PENDING)

    def get_accepted(self, local_actor_id: int, authority: str) -> List[Relationship]:
        return self.get_by_authority(local_actor_id, authority, FollowState.ACCEPTED)

    def get_state(self, local_actor_id: int, remote_actor_uri: str) -> FollowState:
        row = self._relationship_row(local_actor_id, remote_actor_uri)
        return FollowState(row.state) if row is not None else FollowState.REJECTED

    def transition(self, relationship: Relationship, new_state: FollowState,
                   expected: Optional[FollowState] = None) -> FollowState:
        """
        Move a relationship to new_state and return the state it ends up in.

        PENDING only creates a relationship, it never downgrades an accepted one. ACCEPTED is an idempotent
        set-move. REJECTED deletes the row. With `expected`, nothing changes unless the stored state (REJECTED for
        no row) still equals it.
        """
        local_actor_id = relationship.local_actor_id
        remote_actor_uri = relationship.remote_actor_uri
        with self.locks.hold(local_actor_id, remote_actor_uri):
            try:
                row = self._relationship_row(local_actor_id, remote_actor_uri)
                current = FollowState(row.state) if row is not None else FollowState.REJECTED
                if expected is not None and current != expected:
                    logger.debug(f"Skipping {current.value} -> {new_state.value} for {local_actor_id} / "
                                 f"{remote_actor_uri}, expected {expected.value}")
                    return current

                if new_state == FollowState.REJECTED:
                    if row is not None:
                        self.session.delete(row)
                    result = FollowState.REJECTED
                elif row is None:
                    actor = self.get_or_create_remote_actor(remote_actor_uri)
                    self.session.add(FollowRelationship(local_actor_id=local_actor_id, remote_actor_id=actor.id,
                                                        state=new_state.value))
                    result = new_state
                elif new_state == FollowState.ACCEPTED:
                    row.state = FollowState.ACCEPTED.value
                    result = FollowState.ACCEPTED
                else:
                    result = current
                self.session.commit()
            except Exception:
                self.session.rollback()
                raise
        if result != current:
            logger.info(f"Follow {local_actor_id} -> {remote_actor_uri}: {current.value} -> {result.value}")
        return result

    def accept(self, relationship: Relationship) -> FollowState:
        return self.transition(relationship, FollowState.ACCEPTED)

    def reject(self, relationship: Relationship) -> FollowState:
        return self.transition(relationship, FollowState.REJECTED)

    def find_by_outbox_activity_id(self, activity_id: str) -> Optional[RemoteActor]:
        """The remote actor targeted by the Follow we sent with this activity id"""
        outbox = self.get_outbox_follow(activity_id)
        if outbox is None or not outbox.object_id:
            return None
        return self.get_remote_actor(outbox.object_id)

    def get_outbox_follow(self, activity_id: Optional[str]) -> Optional[OutboxActivity]:
        if not activity_id:
            return None
        return self.session.execute(
            select(OutboxActivity).where(OutboxActivity.guid == activity_id,
                                         OutboxActivity.activity_type == 'Follow')
        ).scalar_one_or_none()

    def record_follow(self, local_actor_id: int, remote_actor_uri: str, activity_id: str,
                      activity: Optional[Dict[str, Any]] = None) -> Relationship:
        """Store an outgoing Follow and open a pending relationship for it"""
        self.get_or_create_remote_actor(remote_actor_uri)
        if self.get_outbox_follow(activity_id) is None:
            self.session.add(OutboxActivity(guid=activity_id, activity_type='Follow', local_actor_id=local_actor_id,
                                            object_id=remote_actor_uri,
                                            activity_json=json.dumps(activity) if activity else None))
        self.session.commit()
        relationship = Relationship(local_actor_id=local_actor_id, remote_actor_uri=remote_actor_uri,
                                    state=FollowState.PENDING)
        state = self.transition(relationship, FollowState.PENDING)
        return Relationship(local_actor_id=local_actor_id, remote_actor_uri=remote_actor_uri, state=state)

    def get_follower_ids(self, remote_actor_uri: str) -> List[int]:
        """Local actors with an accepted follow of this remote actor"""
        return list(self.session.execute(
            select(FollowRelationship.local_actor_id)
            .join(RemoteActor, FollowRelationship.remote_actor_id == RemoteActor.id)
            .where(RemoteActor.guid == remote_actor_uri,
                   FollowRelationship.state == FollowState.ACCEPTED.value)
            .order_by(FollowRelationship.local_actor_id)
        ).scalars())

    def _relationship_row(self, local_actor_id: int, remote_actor_uri: str) -> Optional[FollowRelationship]:
        return self.session.execute(
            select(FollowRelationship)
            .join(RemoteActor, FollowRelationship.remote_actor_id == RemoteActor.id)
            .where(FollowRelationship.local_actor_id == local_actor_id, RemoteActor.guid == remote_actor_uri)
        ).scalar_one_or_none()

    # remote actor follows local actor

    def add_follower(self, local_actor_id: int, remote_actor_uri: str, follow_activity_id: Optional[str] = None,
                     **actor_fields) -> bool:
        with self.locks.hold(local_actor_id, remote_actor_uri):
            try:
                actor = self.get_or_create_remote_actor(remote_actor_uri, **actor_fields)
                existing = self._follower_row(local_actor_id, actor.id)
                if existing is None:
                    self.session.add(Follower(local_actor_id=local_actor_id, remote_actor_id=actor.id,
                                              follow_activity_id=follow_activity_id))
                elif follow_activity_id:
                    existing.follow_activity_id = follow_activity_id
                self.session.commit()
            except Exception:
                self.session.rollback()
                raise
        return existing is None

    def remove_follower(self, local_actor_id: int, remote_actor_uri: str) -> bool:
        with self.locks.hold(local_actor_id, remote_actor_uri):
            actor = self.get_remote_actor(remote_actor_uri)
            if actor is None:
                return False
            result = self.session.execute(
                delete(Follower).where(Follower.local_actor_id == local_actor_id,
                                       Follower.remote_actor_id == actor.id))
            self.session.commit()
        return result.rowcount > 0

    def get_followers_by_authority(self, local_actor_id: int, authority: str) -> List[str]:
        """Guids of remote followers of a local actor that live under `authority`, newest first"""
        if not authority:
            return []
        guids = self.session.execute(
            select(RemoteActor.guid)
            .join(Follower, Follower.remote_actor_id == RemoteActor.id)
            .where(Follower.local_actor_id == local_actor_id,
                   RemoteActor.guid.startswith(authority, autoescape=True))
            .order_by(Follower.id.desc())
        ).scalars()
        return [guid for guid in guids if get_url_authority(guid) == authority]

    def _follower_row(self, local_actor_id: int, remote_actor_id: int) -> Optional[Follower]:
        return self.session.execute(
            select(Follower).where(Follower.local_actor_id == local_actor_id,
                                   Follower.remote_actor_id == remote_actor_id)
        ).scalar_one_or_none()


class InboxStore:
    """Received activities and the per-handler idempotency ledger"""

    def __init__(self, session: Optional[Session] = None):
        self.session = session if session is not None else db.session

    def get(self, activity_id: str) -> Optional[InboxActivity]:
        return self.session.execute(
            select(InboxActivity).where(InboxActivity.activity_id == activity_id)
        ).scalar_one_or_none()

    def add(self, activity: Dict[str, Any], user_ids: Iterable[int]) -> Optional[InboxActivity]:
        """Persist a received activity. Returns None when this activity id was stored before."""
        activity_id = activity.get('id')
        if not isinstance(activity_id, str) or not activity_id:
            return None
        if self.get(activity_id) is not None:
            return None
        item = InboxActivity(activity_id=activity_id,
                             activity_type=str(activity.get('type') or ''),
                             actor=object_to_uri(activity.get('actor')),
                             object_id=object_to_uri(activity.get('object')),
                             activity_json=json.dumps(activity),
                             recipients=sorted(set(user_ids)))
        self.session.add(item)
        try:
            self.session.commit()
        except IntegrityError:
            # someone else stored the same delivery in the meantime
            self.session.rollback()
            return None
        return item

    def mark_handled(self, activity_id: str, handled: bool):
        item = self.get(activity_id)
        if item is not None:
            item.handled = handled
            self.session.commit()

    def has_object(self, uri: Optional[str]) -> bool:
        """Whether a previously received Create/Update carried this object"""
        if not uri:
            return False
        found = self.session.execute(
            select(InboxActivity.id)
            .where(InboxActivity.object_id == uri,
                   InboxActivity.activity_type.in_(('Create', 'Update')))
            .limit(1)
        ).scalar_one_or_none()
        return found is not None

    def claim_handler(self, activity_id: str, handler: str) -> bool:
        """Record that `handler` ran for `activity_id`. False if it had already."""
        self.session.add(HandlerRun(activity_id=activity_id, handler=handler))
        try:
            self.session.commit()
        except IntegrityError:
            self.session.rollback()
            return False
        return True

    def recent_for(self, local_actor_id: int, limit: int = 20) -> List[InboxActivity]:
        items = self.session.execute(
            select(InboxActivity).order_by(InboxActivity.id.desc()).limit(limit * 5)
        ).scalars()
        return [item for item in items if local_actor_id in (item.recipients or [])][:limit]
