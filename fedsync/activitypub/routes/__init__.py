"""
ActivityPub Routes Package

Modules:
    - inbox: inbox endpoints for receiving activities
    - collections: the partial followers collection used by Collection-Synchronization
    - helpers: shared utility functions

Every request to this blueprint passes the signature gate before its view runs.
"""

from flask import Blueprint, request

from fedsync.security.signature_gate import SignatureGate

# Create the main ActivityPub blueprint
bp = Blueprint('activitypub', __name__)


@bp.before_request
def verify_signature():
    SignatureGate().verify(request)


# Import all route modules to register them
from . import inbox, collections  # noqa: E402,F401
