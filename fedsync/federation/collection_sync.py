"""
FEP-8fcf Collection-Synchronization.

A remote server may attach

    Collection-Synchronization: collectionId="<followers url>", url="<partial collection url>", digest="<hex>"

to the activities it delivers. The header must be covered by the HTTP signature. The digest is the XOR of the
SHA-256 of every id in the sender's followers collection that lives on our authority. When it disagrees with our
own digest of the same relationships, a reconciliation job is scheduled.

https://codeberg.org/fediverse/fep/src/branch/main/fep/8fcf/fep-8fcf.md
"""
from __future__ import annotations
import hashlib
import logging
import re
from typing import Iterable, Optional
from urllib.parse import quote

from flask import current_app

from fedsync import cache
from fedsync.activitypub.http import fetch_json
from fedsync.activitypub.signature import signature_part
from fedsync.constants import COLLECTION_SYNC_HEADER, COLLECTION_TYPE_FOLLOWERS, WEEK_IN_SECONDS
from fedsync.federation.store import FollowerStore
from fedsync.federation.types import CollectionSyncParams, FetchFailure, InboxEvent
from fedsync.utils import get_url_authority, home_url, local_actor_url, normalize_url, object_to_uri

logger = logging.getLogger(__name__)

REQUIRED_PARAMS = ('collectionId', 'url', 'digest')

_header_param = re.compile(r'\s*([A-Za-z][A-Za-z0-9_-]*)\s*=\s*"([^"]*)"\s*(?:,|$)')
_digest = re.compile(r'[0-9a-fA-F]{64}')
_followers_collection = re.compile(r'/followers(?:/sync)?(?:\?|$)')


def parse_collection_sync_header(value: Optional[str]) -> Optional[CollectionSyncParams]:
    """Parse the header into its params. None if it is malformed or lacks one of the three required keys."""
    if not value or not isinstance(value, str):
        return None
    value = value.strip()
    params = {}
    pos = 0
    while pos < len(value):
        match = _header_param.match(value, pos)
        if match is None:
            return None
        params[match.group(1)] = match.group(2)
        pos = match.end()
    if any(not params.get(key) for key in REQUIRED_PARAMS):
        return None
    if not _digest.fullmatch(params['digest']):
        return None
    params['digest'] = params['digest'].lower()
    return params


def detect_collection_type(url: str) -> Optional[str]:
    if url and _followers_collection.search(url):
        return COLLECTION_TYPE_FOLLOWERS
    return None


def get_collection_digest(ids: Iterable[str]) -> Optional[str]:
    """XOR of the SHA-256 of each id, as 64 lowercase hex digits. None for an empty collection."""
    unique = set(ids)
    if not unique:
        return None
    result = 0
    for item in unique:
        result ^= int.from_bytes(hashlib.sha256(item.encode('utf-8')).digest(), 'big')
    return f'{result:064x}'


def validate_header_params(params: CollectionSyncParams, actor_url: str,
                           store: Optional[FollowerStore] = None) -> bool:
    """collectionId has to be the sender's followers collection, and url has to live next to it"""
    if not params.get('collectionId') or not params.get('url'):
        return False

    expected_collection = get_followers_url(actor_url, store)
    if not expected_collection:
        return False

    if normalize_url(params['collectionId']) != normalize_url(expected_collection):
        logger.info(f"Collection-Synchronization from {actor_url} names {params['collectionId']}, "
                    f"expected {expected_collection}")
        return False

    collection_authority = get_url_authority(params['collectionId'])
    return collection_authority is not None and collection_authority == get_url_authority(params['url'])


def get_followers_url(actor_url: str, store: Optional[FollowerStore] = None) -> Optional[str]:
    store = store or FollowerStore()
    actor = store.get_remote_actor(actor_url)
    if actor is not None and actor.followers_url:
        return actor.followers_url
    try:
        document = fetch_json(actor_url, current_app.config.get('COLLECTION_SYNC_FETCH_TTL', 300))
    except FetchFailure as e:
        logger.info(f"Could not fetch actor {actor_url}: {e.reason}")
        return None
    followers = object_to_uri(document.get('followers'))
    if followers:
        store.get_or_create_remote_actor(actor_url, followers_url=followers, inbox=document.get('inbox'))
        store.session.commit()
    return followers


def _digest_cache_key(collection_type: str, local_actor_id: int, remote_actor_uri: str) -> str:
    remote = hashlib.md5(remote_actor_uri.encode('utf-8')).hexdigest()
    return f'collection_sync_digest_{collection_type}_{local_actor_id}_{remote}'


def get_local_digest(collection_type: str, local_actor_id: int, remote_actor_uri: str,
                     store: Optional[FollowerStore] = None) -> Optional[str]:
    """Digest of the accepted relationships under our own authority, the set reconciliation compares against"""
    key = _digest_cache_key(collection_type, local_actor_id, remote_actor_uri)
    cached = cache.get(key)
    if cached is not None:
        return cached or None
    store = store or FollowerStore()
    accepted = store.get_accepted(local_actor_id, get_url_authority(home_url()))
    digest = get_collection_digest(relationship.guid for relationship in accepted)
    cache.set(key, digest or '', timeout=current_app.config.get('COLLECTION_SYNC_FETCH_TTL', 300))
    return digest


def invalidate_local_digest(collection_type: str, local_actor_id: int, remote_actor_uri: str):
    cache.delete(_digest_cache_key(collection_type, local_actor_id, remote_actor_uri))


def generate_sync_header(local_actor_id: int, authority: str, store: Optional[FollowerStore] = None) -> Optional[str]:
    """The header we attach when delivering to `authority`. None when nobody there follows this actor."""
    store = store or FollowerStore()
    digest = get_collection_digest(store.get_followers_by_authority(local_actor_id, authority))
    if not digest:
        return None
    actor_url = local_actor_url(local_actor_id)
    collection_id = f'{actor_url}/followers'
    url = f"{actor_url}/followers/sync?authority={quote(authority, safe='')}"
    return f'collectionId="{collection_id}", url="{url}", digest="{digest}"'


def is_header_signed(signature: Optional[str]) -> bool:
    covered = signature_part(signature, 'headers').lower().split()
    return COLLECTION_SYNC_HEADER.lower() in covered


def _throttle_key(local_actor_id: int, actor_url: str) -> str:
    return f"collection_sync_received_{local_actor_id}_{hashlib.md5(actor_url.encode('utf-8')).hexdigest()}"


def handle_collection_synchronization(event: InboxEvent, local_actor_id: int,
                                      store: Optional[FollowerStore] = None) -> Optional[str]:
    """Check the header on one delivery for one recipient. Returns the scheduled job id, if any."""
    sync_header = event.header(COLLECTION_SYNC_HEADER)
    if not sync_header:
        return None

    signature = event.header('Signature')
    if not signature:
        authorization = event.header('Authorization') or ''
        signature = authorization[len('signature '):] if authorization.lower().startswith('signature ') else None
    if not is_header_signed(signature):
        logger.info(f"Ignoring unsigned Collection-Synchronization header on {event.activity_id}")
        return None

    params = parse_collection_sync_header(sync_header)
    if params is None:
        logger.info(f"Ignoring malformed Collection-Synchronization header on {event.activity_id}")
        return None

    collection_type = detect_collection_type(params['url'])
    if not collection_type:
        return None

    actor_url = event.actor
    if not actor_url:
        return None

    store = store or FollowerStore()
    if not validate_header_params(params, actor_url, store):
        return None

    if get_local_digest(collection_type, local_actor_id, actor_url, store) == params['digest']:
        return None

    frequency = current_app.config.get('COLLECTION_SYNC_FREQUENCY', WEEK_IN_SECONDS)
    if not cache.add(_throttle_key(local_actor_id, actor_url), 1, timeout=frequency):
        logger.debug(f"Collection sync with {actor_url} for {local_actor_id} already scheduled recently")
        return None

    from fedsync.federation.reconciler import CollectionReconciler
    return CollectionReconciler(store=store).schedule(collection_type, local_actor_id, actor_url, dict(params))


def on_inbox_activity(event: InboxEvent):
    if not event.header(COLLECTION_SYNC_HEADER):
        return
    for local_actor_id in event.user_ids:
        handle_collection_synchronization(event, local_actor_id)


def on_followers_reconciled(local_actor_id: int, remote_actor_uri: str):
    invalidate_local_digest(COLLECTION_TYPE_FOLLOWERS, local_actor_id, remote_actor_uri)
