"""Shared helpers for the ActivityPub routes"""
from typing import Any, Dict, List

from flask import jsonify

from fedsync.constants import ACTIVITY_JSON


def activity_json_response(document: Dict[str, Any], status: int = 200):
    response = jsonify(document)
    response.status_code = status
    response.mimetype = ACTIVITY_JSON
    return response


def ordered_collection(collection_id: str, items: List[Any]) -> Dict[str, Any]:
    return {
        '@context': 'https://www.w3.org/ns/activitystreams',
        'id': collection_id,
        'type': 'OrderedCollection',
        'totalItems': len(items),
        'orderedItems': items,
    }
