"""HTTP Signatures for signing and verifying ActivityPub requests.

https://swicg.github.io/activitypub-http-signature/
https://datatracker.ietf.org/doc/html/draft-cavage-http-signatures-12

Pure functions, no I/O. Keys are passed in as PEM strings.
"""
from base64 import b64encode
from datetime import timezone
from email.utils import parsedate_to_datetime
from hashlib import sha256
import logging
from urllib.parse import urlparse

from httpsig import HeaderSigner, HeaderVerifier
from httpsig.utils import parse_signature_header
from oauth_dropins.webutil import util
from oauth_dropins.webutil.util import fragmentless

import common

logger = logging.getLogger(__name__)

HTTP_SIG_HEADERS = ('(request-target)', 'Host', 'Date', 'Digest')

DATE_FORMAT = '%a, %d %b %Y %H:%M:%S GMT'


def digest(body):
    """Returns the value of the ``Digest`` header for a body.

    Args:
      body (bytes or str)

    Returns:
      str:
    """
    if isinstance(body, str):
        body = body.encode()
    return f'SHA-256={b64encode(sha256(body or b"").digest()).decode()}'


def sign(method, url, body, key_id, private_pem, headers=None):
    """Signs an HTTP request.

    Args:
      method (str): HTTP method, eg ``POST``
      url (str): full URL
      body (bytes): request body, may be empty
      key_id (str): ``keyId`` for the signature, usually ``{actor id}#main-key``
      private_pem (str or bytes): the signing actor's RSA private key
      headers (dict): optional additional headers to include, unsigned

    Returns:
      dict: request headers, including ``Signature``
    """
    if isinstance(private_pem, bytes):
        private_pem = private_pem.decode()

    parsed = urlparse(url)
    path = parsed.path or '/'
    if parsed.query:
        path += f'?{parsed.query}'

    headers = {
        **(headers or {}),
        # required for HTTP Signature
        # https://tools.ietf.org/html/draft-cavage-http-signatures-07#section-2.1.3
        'Date': util.now().strftime(DATE_FORMAT),
        # required by Mastodon
        # https://github.com/tootsuite/mastodon/pull/14556#issuecomment-674077648
        'Host': parsed.netloc,
        # required for HTTP Signature and Mastodon
        'Digest': digest(body),
    }

    logger.debug(f'Signing {method} {url} with {key_id}')
    signer = HeaderSigner(key_id, private_pem, algorithm='rsa-sha256',
                          sign_header='signature', headers=HTTP_SIG_HEADERS)
    signed = signer.sign(headers, method=method.upper(), path=path)
    return dict(signed)


def key_id(headers):
    """Returns the ``keyId`` in a request's ``Signature`` header, or None.

    Never raises.
    """
    sig = _get_header(headers, 'Signature')
    if not sig:
        return None

    try:
        # parse_signature_header lower-cases all keys
        return parse_signature_header(sig).get('keyid')
    except Exception as e:
        logger.info(f"Couldn't parse Signature header: {e}")
        return None


def signer_id(headers):
    """Returns the actor id that signed a request, ie ``keyId`` sans fragment."""
    if id := key_id(headers):
        return fragmentless(id)


def verify(method, path, headers, body, public_pem, max_skew=None, now=None):
    """Verifies an HTTP Signature.

    Checks the ``Digest`` against the body, the ``Date`` against the current
    time, and the signature itself against the public key. Fails closed: any
    malformed or missing input is invalid.

    Args:
      method (str): HTTP method
      path (str): path and query, eg ``/users/alice/inbox``
      headers (dict): request headers, including ``Signature``
      body (bytes)
      public_pem (str or bytes): the signer's RSA public key
      max_skew (datetime.timedelta): allowed clock skew for ``Date`` in either
        direction, defaults to :attr:`common.SIGNATURE_MAX_SKEW`
      now (datetime): defaults to :func:`util.now`

    Returns:
      bool: True if the signature is valid, False otherwise. Never raises.
    """
    try:
        return _verify(method, path, headers, body, public_pem,
                       max_skew=max_skew, now=now)
    except Exception as e:
        logger.info(f'sig verification failed: {e}')
        return False


def _verify(method, path, headers, body, public_pem, max_skew=None, now=None):
    headers = dict(headers)  # copy so we can modify below
    sig = _get_header(headers, 'Signature')
    if not sig:
        logger.info('No HTTP Signature')
        return False
    elif not public_pem:
        logger.info('No public key')
        return False

    sig_fields = parse_signature_header(sig)
    signed_headers = (sig_fields.get('headers') or 'date').lower().split()
    for required in '(request-target)', 'host', 'date', 'digest':
        if required not in signed_headers:
            logger.info(f'Signature does not cover {required}')
            return False

    # TODO: right now, assume hs2019 is rsa-sha256. the real answer is...
    # ...complicated and unclear. 🤷
    # https://socialhub.activitypub.rocks/t/state-of-http-signatures/754/23
    # https://github.com/mastodon/mastodon/pull/14556
    if sig_fields.get('algorithm') == 'hs2019':
        sig_key = next(k for k in headers if k.lower() == 'signature')
        headers[sig_key] = sig.replace('algorithm="hs2019"', 'algorithm="rsa-sha256"')

    got_digest = _get_header(headers, 'Digest') or ''
    if not got_digest:
        logger.info('Missing Digest')
        return False

    # Digest may have multiple comma-separated algorithms
    for val in got_digest.split(','):
        algorithm, _, value = val.strip().partition('=')
        if algorithm.lower() == 'sha-256':
            if value != digest(body).removeprefix('SHA-256='):
                logger.info('Invalid Digest')
                return False
            break
    else:
        logger.info(f'Unsupported Digest {got_digest}')
        return False

    date = _get_header(headers, 'Date')
    if not date:
        logger.info('Missing Date')
        return False

    sent = parsedate_to_datetime(date)
    if sent.tzinfo is None:
        sent = sent.replace(tzinfo=timezone.utc)
    now = now or util.now()
    skew = max_skew if max_skew is not None else common.SIGNATURE_MAX_SKEW
    if abs(now - sent) > skew:
        logger.info(f'Date {date} is outside allowed skew {skew} of {now}')
        return False

    if isinstance(public_pem, bytes):
        public_pem = public_pem.decode()

    logger.debug(f'Verifying signature for {method} {path} with key {sig_fields.get("keyid")}')
    verified = HeaderVerifier(headers, public_pem,
                              required_headers=['Digest'],
                              method=method.upper(),
                              path=path,
                              sign_header='signature',
                              ).verify()
    if verified:
        logger.debug('sig ok')
    else:
        logger.info('sig failed')
    return bool(verified)


def _get_header(headers, name):
    """Case-insensitive header lookup."""
    name = name.lower()
    for key, val in headers.items():
        if key.lower() == name:
            return val
