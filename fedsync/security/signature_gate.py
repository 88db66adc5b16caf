"""
Decides, per request, whether an HTTP signature is required before the route runs
"""
import json
import logging
from typing import Optional

from flask import Request, current_app

from fedsync.federation.types import SignatureRequired
from fedsync.hooks import fire_hook
from fedsync.security.signature_verifier import SignatureVerifier

logger = logging.getLogger(__name__)

WRITE_METHODS = ('POST', 'PUT', 'PATCH', 'DELETE')


def is_authorized_fetch_enabled() -> bool:
    """Config switch, overridable through the `use_authorized_fetch` filter"""
    return bool(fire_hook('use_authorized_fetch', bool(current_app.config.get('AUTHORIZED_FETCH', False))))


class SignatureGate:
    """
    HEAD always passes. The `defer_signature_verification` filter (called with the request) can wave any request
    through. Writes need a valid signature; POST failures are a 401, other writes leave the status to the error
    handler. Reads need one only in authorized fetch mode, and fail with a 401.
    """

    def __init__(self, verifier: Optional[SignatureVerifier] = None):
        self.verifier = verifier or SignatureVerifier()

    def verify(self, request: Request) -> bool:
        """Returns True when the request may proceed, raises SignatureRequired otherwise"""
        method = request.method.upper()
        if method == 'HEAD':
            return True

        if fire_hook('defer_signature_verification', False, request=request):
            data = {'method': method, 'path': request.path}
            logger.info(f"[SECURITY] SIGNATURE_DEFERRED: {json.dumps(data)}",
                        extra={'security_event': 'SIGNATURE_DEFERRED', 'security_data': data})
            return True

        if method in WRITE_METHODS:
            if self.verifier.verify(request):
                return True
            raise SignatureRequired(status=401 if method == 'POST' else None)

        if is_authorized_fetch_enabled() and not self.verifier.verify(request):
            raise SignatureRequired(status=401)

        return True
