"""
Type definitions for the federation core.

Covers follow state, the event handed to inbox listeners, reconciliation results and the error taxonomy.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, TypedDict

from fedsync.activitypub.activity import Activity


class FollowState(str, Enum):
    """State of a local actor's follow of a remote actor. REJECTED means the row is gone."""
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class CollectionSyncParams(TypedDict, total=False):
    """Parsed Collection-Synchronization header"""
    collectionId: str
    url: str
    digest: str


@dataclass(frozen=True, slots=True)
class Relationship:
    """One (local actor, remote actor) follow as seen by the store"""
    local_actor_id: int
    remote_actor_uri: str
    state: FollowState
    remote_actor_id: Optional[int] = None

    @property
    def guid(self) -> str:
        return self.remote_actor_uri


@dataclass(slots=True)
class InboxEvent:
    """Everything an inbox listener gets to see about one dispatched activity"""
    data: Dict[str, Any]
    user_ids: List[int]
    activity_type: str
    activity: Optional[Activity] = None
    headers: Dict[str, str] = field(default_factory=dict)
    handled: Optional[bool] = None

    @property
    def activity_id(self) -> Optional[str]:
        activity_id = self.data.get('id')
        return activity_id if isinstance(activity_id, str) else None

    @property
    def actor(self) -> Optional[str]:
        from fedsync.utils import object_to_uri
        return object_to_uri(self.data.get('actor'))

    def header(self, name: str) -> Optional[str]:
        """Case-insensitive header lookup"""
        wanted = name.lower()
        for key, value in self.headers.items():
            if key.lower() == wanted:
                return value
        return None


@dataclass(slots=True)
class ReconcileResult:
    """What one reconciliation pass did"""
    confirmed: List[str] = field(default_factory=list)
    accepted: List[str] = field(default_factory=list)
    rejected: List[str] = field(default_factory=list)
    remaining: List[str] = field(default_factory=list)

    @property
    def mutations(self) -> int:
        return len(self.accepted) + len(self.rejected)


class FederationError(Exception):
    """Base exception for federation errors"""
    pass


class SignatureRequired(FederationError):
    """The request lacks a signature it needs, or carries one that does not verify"""

    def __init__(self, message: str = 'Failed HTTP signature verification',
                 code: str = 'activitypub_signature_verification', status: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.status = status


class MalformedActivity(FederationError):
    """The payload is not something we can classify at all"""
    pass


class FetchFailure(FederationError):
    """A remote document could not be fetched or was not usable JSON"""

    def __init__(self, url: str, reason: str):
        super().__init__(f"Failed to fetch {url}: {reason}")
        self.url = url
        self.reason = reason


class UnknownReference(FederationError):
    """An activity points at an object or actor we do not know"""
    pass
