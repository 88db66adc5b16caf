"""
Test cases for the signature gate that runs before every ActivityPub route
"""
import pytest
from unittest.mock import Mock

from fedsync.federation.types import SignatureRequired
from fedsync.hooks import add_hook, remove_hook
from fedsync.security.signature_gate import SignatureGate, is_authorized_fetch_enabled


class TestSignatureGate:
    """HEAD, deferral, writes and reads"""

    @pytest.fixture(autouse=True)
    def setup(self, app):
        self.app = app
        self.verifier = Mock()
        self.verifier.verify.return_value = False
        self.gate = SignatureGate(verifier=self.verifier)

    def _verify(self, method, path='/inbox'):
        with self.app.test_request_context(path, method=method):
            from flask import request
            return self.gate.verify(request)

    def test_head_always_passes(self):
        assert self._verify('HEAD') is True
        self.verifier.verify.assert_not_called()

    def test_post_without_valid_signature_is_401(self):
        with pytest.raises(SignatureRequired) as excinfo:
            self._verify('POST')
        assert excinfo.value.status == 401
        assert excinfo.value.code == 'activitypub_signature_verification'

    def test_post_with_valid_signature_passes(self):
        self.verifier.verify.return_value = True
        assert self._verify('POST') is True

    @pytest.mark.parametrize('method', ['PUT', 'PATCH', 'DELETE'])
    def test_other_writes_leave_status_to_the_error_handler(self, method):
        with pytest.raises(SignatureRequired) as excinfo:
            self._verify(method)
        assert excinfo.value.status is None

    def test_get_passes_without_authorized_fetch(self):
        assert self._verify('GET', '/actors/1/inbox') is True
        self.verifier.verify.assert_not_called()

    def test_get_needs_signature_in_authorized_fetch_mode(self):
        self.app.config['AUTHORIZED_FETCH'] = True
        with pytest.raises(SignatureRequired) as excinfo:
            self._verify('GET', '/actors/1/inbox')
        assert excinfo.value.status == 401

    def test_get_with_valid_signature_in_authorized_fetch_mode(self):
        self.app.config['AUTHORIZED_FETCH'] = True
        self.verifier.verify.return_value = True
        assert self._verify('GET', '/actors/1/inbox') is True

    def test_authorized_fetch_can_be_switched_on_by_filter(self):
        def force(enabled):
            return True

        add_hook('use_authorized_fetch', force)
        try:
            with self.app.test_request_context('/'):
                assert is_authorized_fetch_enabled() is True
            with pytest.raises(SignatureRequired):
                self._verify('GET', '/actors/1/inbox')
        finally:
            remove_hook('use_authorized_fetch', force)

    def test_deferral_waves_everything_through(self, trust_all_signatures):
        assert self._verify('POST') is True
        assert self._verify('DELETE') is True
        self.verifier.verify.assert_not_called()

    def test_deferral_sees_the_request(self):
        seen = []

        def defer_only_deletes(defer, request=None):
            seen.append(request.method)
            return request.method == 'DELETE'

        add_hook('defer_signature_verification', defer_only_deletes)
        try:
            assert self._verify('DELETE') is True
            with pytest.raises(SignatureRequired):
                self._verify('POST')
        finally:
            remove_hook('defer_signature_verification', defer_only_deletes)
        assert seen == ['DELETE', 'POST']


class TestSignatureErrorResponses:
    """What a remote server gets back when the gate refuses a request"""

    def test_unsigned_post_gets_401_problem(self, client):
        response = client.post('/inbox', data=b'{}', content_type='application/activity+json')
        assert response.status_code == 401
        assert response.mimetype == 'application/problem+json'
        assert response.get_json()['code'] == 'activitypub_signature_verification'

    def test_head_is_not_blocked(self, client):
        response = client.head('/actors/1/inbox')
        assert response.status_code == 200
