"""
Tests for HTTP signatures: signing, verifying and key lookup
"""
import json
import time
from unittest.mock import patch

import pytest
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding
from flask import g, request

from fedsync.activitypub import signature as signature_module
from fedsync.activitypub.signature import (
    HttpSignature, RsaKeys, VerificationError, VerificationFormatError, http_date, signature_part
)
from fedsync.federation.types import FetchFailure
from fedsync.security import signature_verifier
from fedsync.security.signature_verifier import SignatureVerifier


REMOTE_ACTOR = 'https://remote.example/users/alice'
KEY_ID = f'{REMOTE_ACTOR}#main-key'
BODY = json.dumps({'type': 'Like', 'actor': REMOTE_ACTOR, 'object': 'https://local.example/posts/1'}).encode()


@pytest.fixture(scope='module')
def keypair():
    return RsaKeys.generate_keypair()


@pytest.fixture(scope='module')
def other_keypair():
    return RsaKeys.generate_keypair()


def sign(private_key, body=BODY, path='/inbox', date=None, covered=('(request-target)', 'host', 'date', 'digest'),
         algorithm='rsa-sha256', extra_headers=None):
    values = {
        '(request-target)': f'post {path}',
        'host': 'local.example',
        'date': date or http_date(),
        'digest': HttpSignature.calculate_digest(body),
    }
    values.update({name.lower(): value for name, value in (extra_headers or {}).items()})
    cleartext = '\n'.join(f'{name}: {values[name]}' for name in covered)
    key = serialization.load_pem_private_key(private_key.encode('ascii'), password=None)
    signed = key.sign(cleartext.encode('utf8'), padding.PKCS1v15(), hashes.SHA256())
    headers = {
        'Date': values['date'],
        'Digest': values['digest'],
        'Signature': HttpSignature.compile_signature({
            'keyid': KEY_ID, 'headers': list(covered), 'signature': signed, 'algorithm': algorithm,
        }),
    }
    headers.update(extra_headers or {})
    return headers


class TestVerifyRequest:

    @pytest.fixture(autouse=True)
    def setup(self, app, keypair):
        self.app = app
        self.private_key, self.public_key = keypair

    def verify(self, headers, body=BODY, path='/inbox', method='POST', public_key=None):
        with self.app.test_request_context(path, method=method, headers=headers, data=body):
            return HttpSignature.verify_request(request, public_key or self.public_key)

    def test_valid_signature(self):
        assert self.verify(sign(self.private_key)) is True

    def test_signature_in_authorization_header(self):
        headers = sign(self.private_key)
        headers['Authorization'] = 'Signature ' + headers.pop('Signature')
        assert self.verify(headers) is True

    def test_extra_signed_header(self):
        sync = 'collectionId="x", url="y", digest="z"'
        headers = sign(self.private_key, extra_headers={'Collection-Synchronization': sync},
                       covered=('(request-target)', 'host', 'date', 'digest', 'collection-synchronization'))
        assert self.verify(headers) is True

    def test_tampered_body(self):
        with pytest.raises(VerificationFormatError, match='Digest'):
            self.verify(sign(self.private_key), body=BODY + b' ')

    def test_wrong_key(self, other_keypair):
        with pytest.raises(VerificationError, match='mismatch'):
            self.verify(sign(other_keypair[0]))

    def test_wrong_path(self):
        with pytest.raises(VerificationError):
            self.verify(sign(self.private_key), path='/actors/1/inbox')

    def test_stale_date(self):
        with pytest.raises(VerificationFormatError, match='too far'):
            self.verify(sign(self.private_key, date=http_date(time.time() - 7200)))

    def test_unknown_algorithm(self):
        with pytest.raises(VerificationFormatError, match='algorithm'):
            self.verify(sign(self.private_key, algorithm='rsa-sha1'))

    def test_post_must_sign_digest(self):
        headers = sign(self.private_key, covered=('(request-target)', 'host', 'date'))
        with pytest.raises(VerificationFormatError, match='digest'):
            self.verify(headers)

    def test_unusable_public_key(self):
        with pytest.raises(VerificationFormatError):
            self.verify(sign(self.private_key), public_key='not a key')

    def test_missing_signature(self):
        with pytest.raises(VerificationFormatError):
            self.verify({'Date': http_date()})


class TestParsing:

    def test_parse_signature_defaults(self):
        details = HttpSignature.parse_signature('keyId="k",signature="c2ln"')
        assert details['headers'] == ['date']
        assert details['algorithm'] == 'hs2019'
        assert details['signature'] == b'sig'

    def test_parse_signature_needs_key_id(self):
        with pytest.raises(VerificationFormatError):
            HttpSignature.parse_signature('headers="date",signature="c2ln"')

    def test_parse_signature_bad_base64(self):
        with pytest.raises(VerificationFormatError):
            HttpSignature.parse_signature('keyId="k",signature="abc"')

    def test_signature_part(self):
        value = 'keyId="https://x/u#k",headers="(request-target) date"'
        assert signature_part(value, 'keyId') == 'https://x/u#k'
        assert signature_part(value, 'headers') == '(request-target) date'
        assert signature_part(value, 'algorithm') == ''
        assert signature_part(None, 'keyId') == ''


class TestSignedRequest:

    def test_signed_post(self, app, keypair):
        with patch.object(signature_module, 'httpx_client') as client:
            HttpSignature.signed_request('https://remote.example/inbox?x=1', {'type': 'Follow'}, keypair[0], KEY_ID,
                                         extra_headers={'Collection-Synchronization': 'digest="a"'})

        method, uri = client.request.call_args[0]
        headers = client.request.call_args[1]['headers']
        assert (method, uri) == ('POST', 'https://remote.example/inbox?x=1')
        assert headers['Digest'] == HttpSignature.calculate_digest(json.dumps({'type': 'Follow'}).encode())
        assert headers['User-Agent'].startswith('fedsync/')
        assert '(request-target)' not in headers
        covered = signature_part(headers['Signature'], 'headers').split()
        assert covered == ['(request-target)', 'host', 'date', 'digest', 'content-type',
                           'collection-synchronization']

    def test_signed_get_has_no_body(self, app, keypair):
        with patch.object(signature_module, 'httpx_client') as client:
            HttpSignature.signed_request(REMOTE_ACTOR, None, keypair[0], KEY_ID, method='get')
        kwargs = client.request.call_args[1]
        assert kwargs['content'] is None
        assert kwargs['follow_redirects'] is True
        assert 'Digest' not in kwargs['headers']

    def test_needs_absolute_uri(self, app, keypair):
        with pytest.raises(ValueError):
            HttpSignature.signed_request('/inbox', None, keypair[0], KEY_ID)


class TestSignatureVerifier:

    @pytest.fixture(autouse=True)
    def setup(self, app, store, keypair):
        self.app = app
        self.store = store
        self.private_key, self.public_key = keypair
        self.verifier = SignatureVerifier(store=store)

    def verify(self, headers):
        with self.app.test_request_context('/inbox', method='POST', headers=headers, data=BODY):
            result = self.verifier.verify(request)
            return result, g.get('signature_key_id')

    def test_stored_key(self):
        self.store.get_or_create_remote_actor(REMOTE_ACTOR, key_id=KEY_ID, public_key=self.public_key)
        self.store.session.commit()
        with patch.object(signature_verifier, 'fetch_json') as fetch:
            assert self.verify(sign(self.private_key)) == (True, KEY_ID)
        fetch.assert_not_called()

    def test_key_is_fetched_and_remembered(self):
        document = {
            'id': REMOTE_ACTOR,
            'type': 'Person',
            'inbox': f'{REMOTE_ACTOR}/inbox',
            'followers': f'{REMOTE_ACTOR}/followers',
            'publicKey': {'id': KEY_ID, 'owner': REMOTE_ACTOR, 'publicKeyPem': self.public_key},
        }
        with patch.object(signature_verifier, 'fetch_json', return_value=document):
            assert self.verify(sign(self.private_key))[0] is True

        actor = self.store.get_remote_actor(REMOTE_ACTOR)
        assert actor.public_key == self.public_key
        assert actor.followers_url == f'{REMOTE_ACTOR}/followers'

    def test_key_document(self):
        document = {'id': KEY_ID, 'owner': REMOTE_ACTOR, 'publicKeyPem': self.public_key}
        with patch.object(signature_verifier, 'fetch_json', return_value=document):
            assert self.verifier.get_public_key(KEY_ID) == self.public_key

    def test_unreachable_key(self):
        with patch.object(signature_verifier, 'fetch_json', side_effect=FetchFailure(KEY_ID, 'HTTP 404')):
            assert self.verify(sign(self.private_key)) == (False, None)

    def test_no_signature(self):
        assert self.verify({}) == (False, None)

    def test_invalid_signature(self, other_keypair):
        self.store.get_or_create_remote_actor(REMOTE_ACTOR, key_id=KEY_ID, public_key=self.public_key)
        self.store.session.commit()
        assert self.verify(sign(other_keypair[0])) == (False, None)

    def test_failures_are_logged_as_security_events(self, caplog):
        with caplog.at_level('INFO', logger='fedsync.security.signature_verifier'):
            self.verify({})
        assert '[SECURITY] SIGNATURE_MISSING' in caplog.text

    def test_security_events_carry_structured_data(self, caplog):
        with caplog.at_level('INFO', logger='fedsync.security.signature_verifier'):
            self.verify({})
        record = next(r for r in caplog.records if getattr(r, 'security_event', None) == 'SIGNATURE_MISSING')
        assert record.security_data['method'] == 'POST'
        assert record.security_data['path'] == '/inbox'

    def test_key_document_cannot_claim_an_actor_on_another_server(self):
        self.store.get_or_create_remote_actor(REMOTE_ACTOR, key_id=KEY_ID, public_key=self.public_key,
                                              followers_url=f'{REMOTE_ACTOR}/followers')
        self.store.session.commit()
        evil_key_id = 'https://evil.example/users/mallory#main-key'
        document = {
            'id': 'https://evil.example/users/mallory',
            'type': 'Person',
            'inbox': 'https://evil.example/inbox',
            'followers': 'https://evil.example/followers',
            'publicKey': {'id': evil_key_id, 'owner': REMOTE_ACTOR, 'publicKeyPem': 'EVIL-PEM'},
        }
        with patch.object(signature_verifier, 'fetch_json', return_value=document):
            assert self.verifier.get_public_key(evil_key_id) == 'EVIL-PEM'

        victim = self.store.get_remote_actor(REMOTE_ACTOR)
        assert victim.public_key == self.public_key
        assert victim.key_id == KEY_ID
        assert victim.followers_url == f'{REMOTE_ACTOR}/followers'
        assert self.store.get_remote_actor('https://evil.example/users/mallory').public_key == 'EVIL-PEM'
