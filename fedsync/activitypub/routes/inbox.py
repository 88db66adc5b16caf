"""
Inbox endpoints for receiving ActivityPub activities

Endpoints:
    - /inbox - Shared inbox for all local actors
    - /actors/<id>/inbox - Actor-specific inbox (POST to deliver, GET for the collection)

Anything that parses, names an actor and passes validate_object is stored once and dispatched. The response is
202 whether or not a handler cared about it. Only unparseable payloads and signature problems are refused.
"""

from __future__ import annotations
from typing import Any, Dict, List, Optional, Tuple
import json
import logging

from flask import request, g

from fedsync import inbox_dispatcher
from fedsync.activitypub.activity import Activity
from fedsync.activitypub.json_parser import SafeJSONParser
from fedsync.activitypub.routes import bp
from fedsync.activitypub.routes.helpers import activity_json_response, ordered_collection
from fedsync.federation.store import FollowerStore, InboxStore
from fedsync.federation.types import MalformedActivity, SignatureRequired
from fedsync.utils import get_url_authority, local_actor_id_from_url, local_actor_url, object_to_uri

logger = logging.getLogger(__name__)

InboxResponse = Tuple[str, int]


@bp.route('/inbox', methods=['POST'])
def shared_inbox() -> InboxResponse:
    """
    Shared inbox endpoint. Recipients are worked out from the addressing and from who follows the sender.

    Returns:
        202 Accepted, 400 for unparseable payloads, 401 for signature failures
    """
    return _process_inbox()


@bp.route('/actors/<int:actor_id>/inbox', methods=['POST'])
def actor_inbox(actor_id: int) -> InboxResponse:
    return _process_inbox(local_actor_id=actor_id)


@bp.route('/actors/<int:actor_id>/inbox', methods=['GET'])
def actor_inbox_collection(actor_id: int):
    items = [json.loads(item.activity_json) for item in InboxStore().recent_for(actor_id)]
    return activity_json_response(ordered_collection(f'{local_actor_url(actor_id)}/inbox', items))


def _process_inbox(local_actor_id: Optional[int] = None) -> InboxResponse:
    try:
        activity = SafeJSONParser().parse(request.get_data())
    except ValueError as e:
        data = {'reason': str(e), 'path': request.path}
        logger.info(f"[SECURITY] INBOX_REJECTED_PAYLOAD: {json.dumps(data)}",
                    extra={'security_event': 'INBOX_REJECTED_PAYLOAD', 'security_data': data})
        raise MalformedActivity(str(e))

    activity_type = activity.get('type')
    actor = object_to_uri(activity.get('actor'))
    if not isinstance(activity_type, str) or not activity_type or not actor:
        raise MalformedActivity('Missing type or actor')

    # The key that signed the request has to live where the actor lives
    key_id = g.get('signature_key_id')
    if key_id and get_url_authority(key_id) != get_url_authority(actor):
        raise SignatureRequired('Signature key does not belong to the actor', status=401)

    if not inbox_dispatcher.validate_object(activity):
        logger.info(f"Ignoring {activity_type} {activity.get('id')} from {actor}: failed validation")
        return '', 202

    user_ids = [local_actor_id] if local_actor_id is not None else resolve_recipients(activity, actor)

    inbox = InboxStore()
    stored = inbox.add(activity, user_ids)
    if stored is None and isinstance(activity.get('id'), str):
        logger.debug(f"Already received {activity['id']}")
        return '', 202

    handled = inbox_dispatcher.dispatch(activity, user_ids, headers=dict(request.headers))
    if stored is not None:
        inbox.mark_handled(stored.activity_id, handled)

    return '', 202


def resolve_recipients(activity: Dict[str, Any], actor: str) -> List[int]:
    """Local actors addressed directly, plus local actors following the sender"""
    user_ids = []
    for uri in Activity.from_dict(activity).addressed_to():
        local_actor_id = local_actor_id_from_url(uri)
        if local_actor_id is not None and local_actor_id not in user_ids:
            user_ids.append(local_actor_id)
    for local_actor_id in FollowerStore().get_follower_ids(actor):
        if local_actor_id not in user_ids:
            user_ids.append(local_actor_id)
    return user_ids
