"""
Follower reconciliation against a remote actor's partial followers collection (FEP-8fcf).
"""
from __future__ import annotations
import logging
from typing import Any, Callable, Dict, Optional

from flask import current_app

from fedsync.activitypub.http import fetch_json
from fedsync.constants import MINUTE_IN_SECONDS
from fedsync.federation.scheduler import JobQueue, job
from fedsync.federation.store import FollowerStore
from fedsync.federation.types import FetchFailure, FollowState, ReconcileResult
from fedsync.hooks import fire_action
from fedsync.utils import get_url_authority, home_url

logger = logging.getLogger(__name__)

FETCH_TTL = 5 * MINUTE_IN_SECONDS


class CollectionReconciler:
    """
    Brings local follow state in line with what the remote side says.

    Accepted relationships the remote list still contains are confirmed and consume their entry. The rest are
    dropped. Pending relationships are then accepted if the remaining list contains them, dropped if not. Accepted
    goes first so one remote entry can never both confirm an accepted relationship and promote a pending one.
    """

    def __init__(self, store: Optional[FollowerStore] = None, fetch: Optional[Callable[[str, int], Dict[str, Any]]] = None,
                 queue: Optional[JobQueue] = None):
        self._store = store
        self.fetch = fetch or fetch_json
        self._queue = queue

    @property
    def store(self) -> FollowerStore:
        if self._store is None:
            self._store = FollowerStore()
        return self._store

    @property
    def queue(self) -> JobQueue:
        if self._queue is None:
            from fedsync import job_queue
            self._queue = job_queue
        return self._queue

    def schedule(self, collection_type: str, local_actor_id: int, remote_actor_uri: str,
                 params: Dict[str, Any]) -> str:
        """Queue a reconciliation out of band, at least a minute from now"""
        delay = max(MINUTE_IN_SECONDS, current_app.config.get('RECONCILE_DELAY', MINUTE_IN_SECONDS))
        return self.queue.schedule_once(delay, f'{collection_type}_sync_reconcile', {
            'local_actor_id': local_actor_id,
            'remote_actor_uri': remote_actor_uri,
            'params': dict(params),
        })

    def reconcile(self, local_actor_id: int, remote_actor_uri: str, params: Dict[str, Any],
                  home_authority: Optional[str] = None) -> Optional[ReconcileResult]:
        """Run one pass. Returns None, having changed nothing, when there is no usable remote list."""
        url = params.get('url') if params else None
        if not url:
            return None

        try:
            data = self.fetch(url, current_app.config.get('COLLECTION_SYNC_FETCH_TTL', FETCH_TTL))
        except FetchFailure as e:
            logger.info(f"Reconciliation of {local_actor_id} with {remote_actor_uri} aborted: {e.reason}")
            return None

        remote_followers = data.get('orderedItems') if isinstance(data, dict) else None
        if not isinstance(remote_followers, list):
            logger.info(f"Reconciliation of {local_actor_id} with {remote_actor_uri} aborted: "
                        f"{url} has no orderedItems list")
            return None
        remote_followers = list(remote_followers)

        if home_authority is None:
            home_authority = get_url_authority(home_url())

        result = ReconcileResult()

        for relationship in self.store.get_accepted(local_actor_id, home_authority):
            if relationship.guid in remote_followers:
                remote_followers.remove(relationship.guid)
                result.confirmed.append(relationship.guid)
            else:
                self.store.transition(relationship, FollowState.REJECTED, expected=FollowState.ACCEPTED)
                result.rejected.append(relationship.guid)

        for relationship in self.store.get_pending(local_actor_id, home_authority):
            if relationship.guid in remote_followers:
                self.store.transition(relationship, FollowState.ACCEPTED, expected=FollowState.PENDING)
                remote_followers.remove(relationship.guid)
                result.accepted.append(relationship.guid)
            else:
                self.store.transition(relationship, FollowState.REJECTED, expected=FollowState.PENDING)
                result.rejected.append(relationship.guid)

        result.remaining = remote_followers
        logger.info(f"Reconciled {local_actor_id} with {remote_actor_uri}: {len(result.confirmed)} confirmed, "
                    f"{len(result.accepted)} accepted, {len(result.rejected)} rejected")

        fire_action('followers_sync_reconciled', local_actor_id, remote_actor_uri)
        return result


@job('followers_sync_reconcile')
def reconcile_followers(local_actor_id: int, remote_actor_uri: str, params: Dict[str, Any]):
    CollectionReconciler().reconcile(local_actor_id, remote_actor_uri, params)
