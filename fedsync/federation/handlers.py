"""
Inbox handlers: validate_object checks, handled-predicates and the listeners that change follow state.
"""
from __future__ import annotations
import json
import logging
from typing import Any, Dict, Optional

from fedsync.constants import OBJECT_TYPES, QUOTE_PROPERTIES
from fedsync.federation.dispatcher import InboxDispatcher
from fedsync.federation.store import FollowerStore, InboxStore
from fedsync.federation.types import FollowState, InboxEvent, Relationship
from fedsync.hooks import add_hook, fire_action
from fedsync.utils import object_to_uri, local_actor_id_from_url

logger = logging.getLogger(__name__)


# validate_object chain, each gets the verdict so far and the activity

def validate_accept(valid: bool, activity: Dict[str, Any]) -> bool:
    """An Accept must embed the Follow it accepts, with id, type, actor and object"""
    if not activity.get('type'):
        return False
    if activity['type'] != 'Accept':
        return valid
    if activity.get('actor') is None or activity.get('object') is None:
        return False
    follow = activity['object']
    if not isinstance(follow, dict):
        return False
    if any(follow.get(key) is None for key in ('id', 'type', 'actor', 'object')):
        return False
    if follow['type'] != 'Follow':
        return False
    return valid


def validate_create(valid: bool, activity: Dict[str, Any]) -> bool:
    if not activity.get('type'):
        return False
    if activity['type'] != 'Create':
        return valid
    obj = activity.get('object')
    if not isinstance(obj, dict):
        return False
    if obj.get('id') is None or obj.get('content') is None:
        return False
    return valid


def validate_quote_request(valid: bool, activity: Dict[str, Any]) -> bool:
    if not activity.get('type'):
        return False
    if activity['type'] != 'QuoteRequest':
        return valid
    if any(activity.get(key) is None for key in ('actor', 'object', 'instrument')):
        return False
    return valid


def validate_undo(valid: bool, activity: Dict[str, Any]) -> bool:
    if not activity.get('type'):
        return False
    if activity['type'] != 'Undo':
        return valid
    if activity.get('actor') is None or activity.get('object') is None:
        return False
    if not isinstance(activity['object'], (dict, str)):
        return False
    return valid


# handled predicates

def has_uri_object(data: Dict[str, Any]) -> bool:
    return object_to_uri(data.get('object')) is not None


def embeds_follow(data: Dict[str, Any]) -> bool:
    follow = data.get('object')
    return isinstance(follow, dict) and follow.get('type') == 'Follow' and bool(follow.get('id'))


def is_known_object(data: Dict[str, Any]) -> bool:
    return InboxStore().has_object(object_to_uri(data.get('object')))


def is_well_formed_quote_request(data: Dict[str, Any]) -> bool:
    instrument = data.get('instrument')
    if not isinstance(instrument, dict):
        return False
    if any(not instrument.get(key) for key in ('type', 'id', 'attributedTo', 'content')):
        return False
    quoted = object_to_uri(data.get('object'))
    if not quoted:
        return False
    return any(object_to_uri(instrument.get(prop)) == quoted for prop in QUOTE_PROPERTIES)


def embeds_object_type(dispatcher: InboxDispatcher):
    """Create/Update count as handled only for an embedded object of a registered type"""
    def predicate(data: Dict[str, Any]) -> bool:
        obj = data.get('object')
        return isinstance(obj, dict) and obj.get('type') in dispatcher.object_types
    return predicate


# follow state

def handle_accept(accept: Dict[str, Any], local_actor_id: Optional[int] = None,
                  store: Optional[FollowerStore] = None) -> Optional[FollowState]:
    """
    Accept of one of our Follows: move the relationship from pending to accepted.

    The Follow is matched by our outbox guid (accept.object.id) and the followed actor always comes from that outbox
    record. Accepts for Follows we never sent, or naming someone other than the actor we followed, are ignored. Only
    a pending follow moves; one that was undone or rejected in the meantime stays gone.
    """
    store = store or FollowerStore()
    follow = accept.get('object')
    if not isinstance(follow, dict):
        return None

    outbox = store.get_outbox_follow(follow.get('id'))
    if outbox is None or not outbox.object_id:
        logger.debug(f"Accept {accept.get('id')} does not match a Follow we sent")
        return None

    followed = object_to_uri(follow.get('object'))
    if followed != outbox.object_id:
        logger.warning(f"Accept {accept.get('id')} names {followed} for our Follow of {outbox.object_id}, ignoring")
        return None

    actor = store.get_remote_actor(outbox.object_id)
    if actor is None:
        logger.debug(f"Accept {accept.get('id')} is for an unknown actor {outbox.object_id}")
        return None

    sender = object_to_uri(accept.get('actor'))
    if sender != actor.guid:
        logger.warning(f"Accept {accept.get('id')} from {sender} for a Follow of {actor.guid}, ignoring")
        return None

    local_actor_id = outbox.local_actor_id if outbox.local_actor_id is not None else local_actor_id
    if local_actor_id is None:
        return None

    relationship = Relationship(local_actor_id=local_actor_id, remote_actor_uri=actor.guid,
                                state=FollowState.PENDING, remote_actor_id=actor.id)
    state = store.transition(relationship, FollowState.ACCEPTED, expected=FollowState.PENDING)
    fire_action('handled_accept', accept, [local_actor_id], state == FollowState.ACCEPTED, state)
    return state


def handle_reject(reject: Dict[str, Any], store: Optional[FollowerStore] = None) -> Optional[FollowState]:
    """Reject of one of our Follows: the relationship is dropped"""
    store = store or FollowerStore()
    follow = reject.get('object')
    if not isinstance(follow, dict):
        return None
    outbox = store.get_outbox_follow(follow.get('id'))
    if outbox is None or not outbox.object_id:
        return None
    sender = object_to_uri(reject.get('actor'))
    if sender and sender != outbox.object_id:
        logger.warning(f"Reject {reject.get('id')} from {sender} for a Follow of {outbox.object_id}, ignoring")
        return None

    relationship = Relationship(local_actor_id=outbox.local_actor_id, remote_actor_uri=outbox.object_id,
                                state=FollowState.PENDING)
    state = store.transition(relationship, FollowState.REJECTED)
    fire_action('handled_reject', reject, [outbox.local_actor_id], True, state)
    return state


def handle_follow(follow: Dict[str, Any], store: Optional[FollowerStore] = None) -> bool:
    """A remote actor follows one of ours"""
    local_actor_id = local_actor_id_from_url(object_to_uri(follow.get('object')))
    remote_actor_uri = object_to_uri(follow.get('actor'))
    if local_actor_id is None or not remote_actor_uri:
        return False
    store = store or FollowerStore()
    store.add_follower(local_actor_id, remote_actor_uri, follow_activity_id=follow.get('id'))
    fire_action('handled_follow', follow, [local_actor_id], True)
    return True


def handle_undo(undo: Dict[str, Any], store: Optional[FollowerStore] = None,
                inbox: Optional[InboxStore] = None) -> bool:
    """Undo of a Follow we received earlier. Other undos are left to whoever listens for them."""
    actor_uri = object_to_uri(undo.get('actor'))
    undone = undo.get('object')
    if isinstance(undone, str):
        stored = (inbox or InboxStore()).get(undone)
        undone = json.loads(stored.activity_json) if stored is not None else None
    if not isinstance(undone, dict) or undone.get('type') != 'Follow':
        return False
    if not actor_uri or object_to_uri(undone.get('actor')) != actor_uri:
        return False

    local_actor_id = local_actor_id_from_url(object_to_uri(undone.get('object')))
    if local_actor_id is None:
        return False
    store = store or FollowerStore()
    removed = store.remove_follower(local_actor_id, actor_uri)
    fire_action('handled_undo', undo, [local_actor_id], removed, undone)
    return removed


# listeners

def on_inbox_accept(event: InboxEvent):
    handle_accept(event.data, event.user_ids[0] if event.user_ids else None)


def on_inbox_reject(event: InboxEvent):
    handle_reject(event.data)


def on_inbox_follow(event: InboxEvent):
    handle_follow(event.data)


def on_inbox_undo(event: InboxEvent):
    handle_undo(event.data)


def register_handlers(dispatcher: InboxDispatcher):
    """Wire the default handlers into a dispatcher. Safe to call more than once."""
    from fedsync.federation import collection_sync, reconciler  # noqa: F401  registers the reconcile job

    for object_type in OBJECT_TYPES:
        dispatcher.register_object_type(object_type)

    dispatcher.register_validator(validate_accept)
    dispatcher.register_validator(validate_create)
    dispatcher.register_validator(validate_quote_request)
    dispatcher.register_validator(validate_undo)

    dispatcher.register_predicate('create', embeds_object_type(dispatcher))
    dispatcher.register_predicate('update', embeds_object_type(dispatcher))
    dispatcher.register_predicate('delete', is_known_object)
    dispatcher.register_predicate('follow', has_uri_object)
    dispatcher.register_predicate('like', has_uri_object)
    dispatcher.register_predicate('announce', has_uri_object)
    dispatcher.register_predicate('quote_request', is_well_formed_quote_request)
    dispatcher.register_predicate('accept', embeds_follow)
    dispatcher.register_predicate('reject', embeds_follow)
    dispatcher.register_predicate('undo', has_uri_object)

    dispatcher.add_listener('inbox_accept', on_inbox_accept)
    dispatcher.add_listener('inbox_reject', on_inbox_reject)
    dispatcher.add_listener('inbox_follow', on_inbox_follow)
    dispatcher.add_listener('inbox_undo', on_inbox_undo)
    dispatcher.add_listener('inbox_create', collection_sync.on_inbox_activity)
    dispatcher.add_listener('inbox_update', collection_sync.on_inbox_activity)

    dispatcher.claim = lambda activity_id, handler: InboxStore().claim_handler(activity_id, handler)

    add_hook('followers_sync_reconciled', collection_sync.on_followers_reconciled)
