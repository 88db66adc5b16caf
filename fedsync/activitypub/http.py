"""Fetching remote ActivityPub documents"""
from __future__ import annotations
import hashlib
import json
import logging
from typing import Any, Dict

import httpx
from flask import current_app

from fedsync import cache, httpx_client
from fedsync.activitypub.signature import HttpSignature
from fedsync.constants import VERSION
from fedsync.federation.types import FetchFailure

logger = logging.getLogger(__name__)

ACCEPT_HEADER = 'application/activity+json, application/ld+json; profile="https://www.w3.org/ns/activitystreams"'


def _cache_key(url: str) -> str:
    return 'remote_object_' + hashlib.md5(url.encode('utf-8')).hexdigest()


def fetch_json(url: str, cache_ttl_seconds: int = 0) -> Dict[str, Any]:
    """
    GET an ActivityPub document and return it as a dict.

    A successful result is cached for cache_ttl_seconds. There is no retry: any transport error, non-2xx status or
    body that is not a JSON object raises FetchFailure.
    """
    if not url or '://' not in url:
        raise FetchFailure(str(url), 'not an absolute url')

    key = _cache_key(url)
    if cache_ttl_seconds:
        cached = cache.get(key)
        if cached is not None:
            return cached

    timeout = current_app.config.get('FETCH_TIMEOUT', 10)
    key_id = current_app.config.get('INSTANCE_KEY_ID')
    private_key = current_app.config.get('INSTANCE_PRIVATE_KEY')
    try:
        if key_id and private_key:
            response = HttpSignature.signed_request(url, None, private_key, key_id, method='get', timeout=timeout)
        else:
            headers = {
                'Accept': ACCEPT_HEADER,
                'User-Agent': f'fedsync/{VERSION}; +https://{current_app.config["SERVER_NAME"]}',
            }
            response = httpx_client.get(url, headers=headers, timeout=timeout, follow_redirects=True)
    except (httpx.HTTPError, ValueError) as e:
        raise FetchFailure(url, str(e)) from e

    try:
        if response.status_code < 200 or response.status_code >= 300:
            raise FetchFailure(url, f'HTTP {response.status_code}')
        try:
            document = response.json()
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise FetchFailure(url, f'invalid JSON: {e}') from e
    finally:
        response.close()

    if not isinstance(document, dict):
        raise FetchFailure(url, 'response is not a JSON object')

    if cache_ttl_seconds:
        cache.set(key, document, timeout=cache_ttl_seconds)
    return document


def clear_fetch_cache(url: str):
    cache.delete(_cache_key(url))
