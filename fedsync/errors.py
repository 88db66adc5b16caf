"""JSON error responses for federation peers"""
import logging

from flask import jsonify, request
from werkzeug.exceptions import HTTPException

from fedsync import db
from fedsync.federation.types import SignatureRequired, MalformedActivity

logger = logging.getLogger(__name__)

# Status for a SignatureRequired raised without an explicit one
DEFAULT_SIGNATURE_STATUS = 403


def problem(status: int, title: str, detail: str = '', code: str = ''):
    body = {'type': 'about:blank', 'title': title, 'detail': detail, 'status': status}
    if code:
        body['code'] = code
    response = jsonify(body)
    response.status_code = status
    response.mimetype = 'application/problem+json'
    return response


def register_error_handlers(app):

    @app.errorhandler(SignatureRequired)
    def signature_required(error: SignatureRequired):
        status = error.status or DEFAULT_SIGNATURE_STATUS
        return problem(status, 'Signature verification failed', error.message, error.code)

    @app.errorhandler(MalformedActivity)
    def malformed_activity(error: MalformedActivity):
        return problem(400, 'Malformed activity', str(error), 'activitypub_malformed_activity')

    @app.errorhandler(HTTPException)
    def http_exception(error: HTTPException):
        return problem(error.code or 500, error.name, error.description or '')

    @app.errorhandler(500)
    def internal_error_500(error):
        db.session.rollback()
        logger.error(f"Unhandled error on {request.method} {request.path}: {error}")
        return problem(500, 'Internal Server Error')
