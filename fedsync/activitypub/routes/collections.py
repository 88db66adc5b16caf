"""
Partial followers collection (FEP-8fcf)

    GET /actors/<id>/followers/sync?authority=https://remote.example

lists the followers of a local actor that live on one remote authority, so that server can check its own state
against ours.
"""
from flask import request, abort

from fedsync.activitypub.routes import bp
from fedsync.activitypub.routes.helpers import activity_json_response, ordered_collection
from fedsync.federation.store import FollowerStore
from fedsync.utils import get_url_authority


@bp.route('/actors/<int:actor_id>/followers/sync', methods=['GET'])
def followers_sync(actor_id: int):
    authority = get_url_authority(request.args.get('authority', ''))
    if not authority:
        abort(400, description='authority must be a scheme://host url')
    followers = FollowerStore().get_followers_by_authority(actor_id, authority)
    return activity_json_response(ordered_collection(request.url, followers))
