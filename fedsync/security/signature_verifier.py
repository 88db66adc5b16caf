"""
HTTP signature verification for inbound requests
"""
from typing import Optional, Dict, Any
from flask import Request, g
from urllib.parse import urldefrag
import json
import logging

from fedsync.activitypub.http import fetch_json
from fedsync.activitypub.signature import HttpSignature, VerificationError, signature_header, signature_part
from fedsync.federation.store import FollowerStore
from fedsync.federation.types import FetchFailure
from fedsync.utils import get_url_authority, object_to_uri


class SignatureVerifier:
    """
    Checks the HTTP signature of a request against the sender's public key.

    The key is looked up by keyId, first among stored remote actors and then by fetching the key (or actor)
    document, which is remembered for next time.
    """

    KEY_CACHE_TTL = 3600

    def __init__(self, store: Optional[FollowerStore] = None):
        self.logger = logging.getLogger(__name__)
        self._store = store

    @property
    def store(self) -> FollowerStore:
        if self._store is None:
            self._store = FollowerStore()
        return self._store

    def verify(self, request: Request) -> bool:
        signature = signature_header(request)
        if not signature:
            self._log_security_event('SIGNATURE_MISSING', request, {})
            return False

        key_id = signature_part(signature, 'keyId')
        if not key_id:
            self._log_security_event('SIGNATURE_MALFORMED', request, {'reason': 'no keyId'}, level='WARNING')
            return False

        public_key = self.get_public_key(key_id)
        if not public_key:
            self._log_security_event('SIGNATURE_KEY_UNAVAILABLE', request, {'key_id': key_id}, level='WARNING')
            return False

        try:
            HttpSignature.verify_request(request, public_key)
        except VerificationError as e:
            self._log_security_event('SIGNATURE_INVALID', request, {'key_id': key_id, 'reason': str(e)},
                                     level='WARNING')
            return False

        g.signature_key_id = key_id
        self.logger.debug(f"Verified HTTP signature from {key_id}")
        return True

    def get_public_key(self, key_id: str) -> Optional[str]:
        actor_uri = urldefrag(key_id)[0]
        actor = self.store.get_remote_actor(actor_uri)
        if actor is not None and actor.public_key and actor.key_id in (None, key_id):
            return actor.public_key

        try:
            document = fetch_json(key_id, self.KEY_CACHE_TTL)
        except FetchFailure as e:
            self.logger.info(f"Could not fetch key {key_id}: {e.reason}")
            return None

        key = document.get('publicKey') if 'publicKeyPem' not in document else document
        if isinstance(key, list):
            key = next((k for k in key if isinstance(k, dict) and k.get('id') == key_id), None)
        if not isinstance(key, dict) or not key.get('publicKeyPem'):
            return None

        owner = object_to_uri(key.get("owner")) or actor_uri
        # A key document only speaks for actors on its own server
        if get_url_authority(owner) != get_url_authority(key_id):
            data = {'key_id': key_id, 'owner': owner}
            self.logger.warning(f"[SECURITY] KEY_OWNER_MISMATCH: {json.dumps(data)}",
                                extra={'security_event': 'KEY_OWNER_MISMATCH', 'security_data': data})
            owner = actor_uri
        actor_fields = {"key_id": key_id, "public_key": key["publicKeyPem"]}
        if document.get("inbox"):
            actor_fields.update(inbox=document.get("inbox"), followers_url=object_to_uri(document.get("followers")))
        self.store.get_or_create_remote_actor(owner, **actor_fields)
        self.store.session.commit()
        return key["publicKeyPem"]

    def _log_security_event(self, event_type: str, request: Request, data: Dict[str, Any], level: str = 'INFO'):
        data = dict(data, method=request.method, path=request.path,
                    remote_addr=request.headers.get('X-Forwarded-For') or request.remote_addr)
        log_message = f"[SECURITY] {event_type}: {json.dumps(data)}"
        extra = {'security_event': event_type, 'security_data': data}
        if level == 'WARNING':
            self.logger.warning(log_message, extra=extra)
        else:
            self.logger.info(log_message, extra=extra)
