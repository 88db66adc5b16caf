"""Database models for actors, follow state and the inbox"""
from __future__ import annotations
from datetime import datetime
from typing import Optional, List

from sqlalchemy import String, Integer, Boolean, Text, DateTime, ForeignKey, JSON, UniqueConstraint, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship

from fedsync import db
from fedsync.utils import utcnow


class TimestampMixin:
    """Mixin for created_at and updated_at timestamps"""
    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=utcnow,
        nullable=False,
        index=True
    )
    updated_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime,
        onupdate=utcnow
    )


class RemoteActor(TimestampMixin, db.Model):
    """An actor on another server, identified by its canonical URI (guid)"""
    __tablename__ = 'remote_actor'

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    guid: Mapped[str] = mapped_column(String(2048), unique=True, nullable=False)
    inbox: Mapped[Optional[str]] = mapped_column(String(2048))
    shared_inbox: Mapped[Optional[str]] = mapped_column(String(2048))
    followers_url: Mapped[Optional[str]] = mapped_column(String(2048))
    key_id: Mapped[Optional[str]] = mapped_column(String(2048), index=True)
    public_key: Mapped[Optional[str]] = mapped_column(Text)

    following: Mapped[List['FollowRelationship']] = relationship(
        back_populates='remote_actor', cascade='all, delete-orphan')

    def __repr__(self) -> str:
        return f'<RemoteActor {self.guid}>'


class FollowRelationship(TimestampMixin, db.Model):
    """A local actor following a remote actor. Pending until the remote side accepts."""
    __tablename__ = 'follow_relationship'
    __table_args__ = (
        UniqueConstraint('local_actor_id', 'remote_actor_id', name='uq_follow_relationship_pair'),
        Index('ix_follow_relationship_local_state', 'local_actor_id', 'state'),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    local_actor_id: Mapped[int] = mapped_column(Integer, nullable=False)
    remote_actor_id: Mapped[int] = mapped_column(ForeignKey('remote_actor.id', ondelete='CASCADE'), nullable=False)
    state: Mapped[str] = mapped_column(String(16), nullable=False, default='pending')

    remote_actor: Mapped[RemoteActor] = relationship(back_populates='following')


class Follower(TimestampMixin, db.Model):
    """A remote actor following a local actor"""
    __tablename__ = 'follower'
    __table_args__ = (
        UniqueConstraint('local_actor_id', 'remote_actor_id', name='uq_follower_pair'),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    local_actor_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    remote_actor_id: Mapped[int] = mapped_column(ForeignKey('remote_actor.id', ondelete='CASCADE'), nullable=False)
    follow_activity_id: Mapped[Optional[str]] = mapped_column(String(2048))

    remote_actor: Mapped[RemoteActor] = relationship()


class OutboxActivity(TimestampMixin, db.Model):
    """Activities we sent. Follows are matched against incoming Accept/Reject by guid."""
    __tablename__ = 'outbox_activity'

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    guid: Mapped[str] = mapped_column(String(2048), unique=True, nullable=False)
    activity_type: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    local_actor_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    object_id: Mapped[Optional[str]] = mapped_column(String(2048))
    activity_json: Mapped[Optional[str]] = mapped_column(Text)


class InboxActivity(TimestampMixin, db.Model):
    """A received activity, kept for audit and replay. Only `handled` changes after insert."""
    __tablename__ = 'inbox_activity'

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    activity_id: Mapped[str] = mapped_column(String(2048), unique=True, nullable=False)
    activity_type: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    actor: Mapped[Optional[str]] = mapped_column(String(2048), index=True)
    object_id: Mapped[Optional[str]] = mapped_column(String(2048), index=True)
    activity_json: Mapped[str] = mapped_column(Text, nullable=False)
    recipients: Mapped[list] = mapped_column(JSON, default=list)
    handled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)


class HandlerRun(db.Model):
    """One row per (activity, handler) that has already run"""
    __tablename__ = 'handler_run'
    __table_args__ = (
        UniqueConstraint('activity_id', 'handler', name='uq_handler_run'),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    activity_id: Mapped[str] = mapped_column(String(2048), nullable=False)
    handler: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
