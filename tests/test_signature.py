"""Unit tests for signature.py."""
from datetime import timedelta

from httpsig import HeaderSigner
from oauth_dropins.webutil import testutil

import signature
from signature import digest, key_id, signer_id, sign, verify
from .testutil import (
    REMOTE_PRIVATE_PEM,
    REMOTE_PUBLIC_PEM,
    ROTATED_PUBLIC_PEM,
    TestCase,
)

KEY_ID = 'https://mas.to/users/alice#main-key'
BODY = b'{"type": "Follow"}'


class SignatureTest(TestCase):

    def sign(self, body=BODY, **kwargs):
        return sign('POST', 'https://localhost/inbox', body, KEY_ID,
                    REMOTE_PRIVATE_PEM, **kwargs)

    def test_digest(self):
        self.assertEqual('SHA-256=47DEQpj8HBSa+/TImW+5JCeuQeRkm5NMpJWZG3hSuFU=',
                         digest(b''))
        self.assertEqual(digest(b'foo'), digest('foo'))

    def test_sign_headers(self):
        headers = self.sign(headers={'Content-Type': 'application/activity+json'})
        headers = {k.lower(): v for k, v in headers.items()}

        self.assertEqual('localhost', headers['host'])
        self.assertEqual('Sun, 02 Jan 2022 03:04:05 GMT', headers['date'])
        self.assertEqual(digest(BODY), headers['digest'])
        self.assertEqual('application/activity+json', headers['content-type'])
        self.assertIn(f'keyId="{KEY_ID}"', headers['signature'])
        self.assertIn('headers="(request-target) host date digest"',
                      headers['signature'])

    def test_key_id_signer_id(self):
        headers = self.sign()
        self.assertEqual(KEY_ID, key_id(headers))
        self.assertEqual('https://mas.to/users/alice', signer_id(headers))

    def test_key_id_missing_or_garbage(self):
        self.assertIsNone(key_id({}))
        self.assertIsNone(signer_id({}))
        self.assertIsNone(key_id({'Signature': 'not a signature'}))

    def test_verify(self):
        self.assertTrue(verify('POST', '/inbox', self.sign(), BODY,
                               REMOTE_PUBLIC_PEM))

    def test_verify_case_insensitive_headers(self):
        headers = {k.title(): v for k, v in self.sign().items()}
        self.assertTrue(verify('POST', '/inbox', headers, BODY, REMOTE_PUBLIC_PEM))

    def test_verify_public_key_bytes(self):
        self.assertTrue(verify('POST', '/inbox', self.sign(), BODY,
                               REMOTE_PUBLIC_PEM.encode()))

    def test_verify_wrong_key(self):
        self.assertFalse(verify('POST', '/inbox', self.sign(), BODY,
                                ROTATED_PUBLIC_PEM))

    def test_verify_no_key(self):
        self.assertFalse(verify('POST', '/inbox', self.sign(), BODY, None))

    def test_verify_tampered_body(self):
        self.assertFalse(verify('POST', '/inbox', self.sign(), b'{"type": "Like"}',
                                REMOTE_PUBLIC_PEM))

    def test_verify_wrong_path(self):
        self.assertFalse(verify('POST', '/users/alice/inbox', self.sign(), BODY,
                                REMOTE_PUBLIC_PEM))

    def test_verify_wrong_method(self):
        self.assertFalse(verify('GET', '/inbox', self.sign(), BODY,
                                REMOTE_PUBLIC_PEM))

    def test_verify_no_signature(self):
        headers = self.sign()
        headers = {k: v for k, v in headers.items() if k.lower() != 'signature'}
        self.assertFalse(verify('POST', '/inbox', headers, BODY, REMOTE_PUBLIC_PEM))

    def test_verify_garbage_signature(self):
        headers = {**self.sign(), 'signature': 'keyId="x",signature="abc"'}
        self.assertFalse(verify('POST', '/inbox', headers, BODY, REMOTE_PUBLIC_PEM))

    def test_verify_missing_digest(self):
        headers = {k: v for k, v in self.sign().items() if k.lower() != 'digest'}
        self.assertFalse(verify('POST', '/inbox', headers, BODY, REMOTE_PUBLIC_PEM))

    def test_verify_digest_not_signed(self):
        headers = {
            'Date': 'Sun, 02 Jan 2022 03:04:05 GMT',
            'Host': 'localhost',
            'Digest': digest(BODY),
        }
        signer = HeaderSigner(KEY_ID, REMOTE_PRIVATE_PEM, algorithm='rsa-sha256',
                              sign_header='signature',
                              headers=('(request-target)', 'host', 'date'))
        signed = signer.sign(headers, method='POST', path='/inbox')
        self.assertFalse(verify('POST', '/inbox', signed, BODY, REMOTE_PUBLIC_PEM))

    def test_verify_host_not_signed(self):
        headers = {
            'Date': 'Sun, 02 Jan 2022 03:04:05 GMT',
            'Host': 'localhost',
            'Digest': digest(BODY),
        }
        signer = HeaderSigner(KEY_ID, REMOTE_PRIVATE_PEM, algorithm='rsa-sha256',
                              sign_header='signature',
                              headers=('(request-target)', 'date', 'digest'))
        signed = signer.sign(headers, method='POST', path='/inbox')
        self.assertFalse(verify('POST', '/inbox', signed, BODY, REMOTE_PUBLIC_PEM))

        # the same request is valid once Host is covered
        signer = HeaderSigner(KEY_ID, REMOTE_PRIVATE_PEM, algorithm='rsa-sha256',
                              sign_header='signature',
                              headers=('(request-target)', 'host', 'date', 'digest'))
        signed = signer.sign(headers, method='POST', path='/inbox')
        self.assertTrue(verify('POST', '/inbox', signed, BODY, REMOTE_PUBLIC_PEM))

    def test_verify_hs2019(self):
        headers = self.sign()
        headers['signature'] = headers['signature'].replace(
            'algorithm="rsa-sha256"', 'algorithm="hs2019"')
        self.assertTrue(verify('POST', '/inbox', headers, BODY, REMOTE_PUBLIC_PEM))

    def test_verify_date_skew(self):
        headers = self.sign()

        for skew in timedelta(seconds=29), -timedelta(seconds=29):
            with self.subTest(skew=skew):
                self.assertTrue(verify('POST', '/inbox', headers, BODY,
                                       REMOTE_PUBLIC_PEM, now=testutil.NOW + skew))

        for skew in timedelta(seconds=31), -timedelta(seconds=31), timedelta(hours=1):
            with self.subTest(skew=skew):
                self.assertFalse(verify('POST', '/inbox', headers, BODY,
                                        REMOTE_PUBLIC_PEM, now=testutil.NOW + skew))

    def test_verify_custom_max_skew(self):
        headers = self.sign()
        self.assertTrue(verify('POST', '/inbox', headers, BODY, REMOTE_PUBLIC_PEM,
                               now=testutil.NOW + timedelta(minutes=5),
                               max_skew=timedelta(minutes=10)))

    def test_verify_uses_util_now(self):
        headers = self.sign()
        self.advance(timedelta(minutes=1))
        self.assertFalse(verify('POST', '/inbox', headers, BODY, REMOTE_PUBLIC_PEM))

    def test_sign_includes_query(self):
        headers = sign('GET', 'https://localhost/users/alice?page=1', b'', KEY_ID,
                       REMOTE_PRIVATE_PEM)
        self.assertTrue(verify('GET', '/users/alice?page=1', headers, b'',
                               REMOTE_PUBLIC_PEM))
        self.assertFalse(verify('GET', '/users/alice', headers, b'',
                                REMOTE_PUBLIC_PEM))

    def test_http_sig_headers(self):
        self.assertEqual(('(request-target)', 'Host', 'Date', 'Digest'),
                         signature.HTTP_SIG_HEADERS)
