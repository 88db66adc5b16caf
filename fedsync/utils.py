from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any, Optional
from urllib.parse import urlparse, parse_qs

import redis
from flask import current_app
from furl import furl

DEFAULT_PORTS = {'http': 80, 'https': 443}

_camel_boundary = re.compile(r'(?<=[a-z0-9])(?=[A-Z])|(?<=[A-Z])(?=[A-Z][a-z])')


def utcnow(naive=True):
    if naive:
        return datetime.now(timezone.utc).replace(tzinfo=None)
    return datetime.now(timezone.utc)


def camel_to_snake_case(value: str) -> str:
    """'QuoteRequest' -> 'quote_request', 'Create' -> 'create'"""
    if not value:
        return ''
    return _camel_boundary.sub('_', value.strip()).replace('-', '_').lower()


def object_to_uri(data: Any) -> Optional[str]:
    """
    Reduce an ActivityStreams reference to its URI.

    Accepts a bare URI, an embedded object (id, or href for Links) or a list, in which case the first usable
    entry wins.
    """
    if isinstance(data, str):
        return data or None
    if isinstance(data, list):
        for item in data:
            uri = object_to_uri(item)
            if uri:
                return uri
        return None
    if isinstance(data, dict):
        if data.get('type') == 'Link' and isinstance(data.get('href'), str):
            return data['href'] or None
        uri = data.get('id')
        return uri if isinstance(uri, str) and uri else None
    return None


def get_url_authority(url: Optional[str]) -> Optional[str]:
    """scheme://host[:port] of a url, with the port only when it is not the default for the scheme"""
    if not url or not isinstance(url, str):
        return None
    try:
        parts = furl(url)
    except ValueError:
        return None
    if not parts.scheme or not parts.host:
        return None
    scheme = parts.scheme.lower()
    authority = f'{scheme}://{parts.host.lower()}'
    if parts.port and parts.port != DEFAULT_PORTS.get(scheme):
        authority += f':{parts.port}'
    return authority


def normalize_url(url: str) -> str:
    """Trailing slash normalization, used when comparing collection ids"""
    return url.rstrip('/') + '/'


def home_url() -> str:
    return f"{current_app.config['HTTP_PROTOCOL']}://{current_app.config['SERVER_NAME']}"


def local_actor_url(local_actor_id: int) -> str:
    return f'{home_url()}/actors/{local_actor_id}'


def local_actor_id_from_url(url: Optional[str]) -> Optional[int]:
    """The local actor id behind one of our own actor urls, or None for anything else"""
    if not url or not isinstance(url, str):
        return None
    prefix = f'{home_url()}/actors/'
    if not url.startswith(prefix):
        return None
    rest = url[len(prefix):].rstrip('/')
    return int(rest) if rest.isascii() and rest.isdigit() else None


def get_redis_connection(connection_string=None) -> redis.Redis:
    if connection_string is None:
        connection_string = current_app.config['REDIS_URL']
    if connection_string.startswith('unix://'):
        unix_socket_path, db, password = parse_redis_pipe_string(connection_string)
        return redis.Redis(unix_socket_path=unix_socket_path, db=db, password=password, decode_responses=True)
    return redis.Redis.from_url(connection_string, decode_responses=True)


def parse_redis_pipe_string(connection_string: str):
    parsed_url = urlparse(connection_string)
    query_params = parse_qs(parsed_url.query)

    db = int(query_params.get('db', [0])[0])
    password = query_params.get('password', [None])[0]
    return parsed_url.path, db, password
