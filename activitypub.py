"""ActivityPub HTTP client: signed fetches and POSTs, actor parsing, and
builders for the activities we send."""
import logging
from urllib.parse import urljoin

from granary import as1, as2
from oauth_dropins.webutil import util
from oauth_dropins.webutil.util import fragmentless, json_dumps
import requests
from requests import TooManyRedirects
from requests.models import DEFAULT_REDIRECT_LIMIT

import common
from domains import normalize_host
from models import Actor, new_id
import signature
from storage import storage as default_storage

logger = logging.getLogger(__name__)

ACTOR_TYPES = ('Application', 'Group', 'Organization', 'Person', 'Service')
NOTE_TYPES = ('Article', 'Note', 'Page', 'Question')

# https://seb.jambor.dev/posts/understanding-activitypub-part-4-threads/#the-instance-actor
_INSTANCE_ACTOR = None


class FetchError(Exception):
    """Fetching an ActivityPub document failed.

    ``status`` is the HTTP status code, or None if there was no response, eg a
    timeout or connection failure.
    """
    def __init__(self, message, status=None):
        super().__init__(message)
        self.status = status


def instance_actor(store=None):
    """Returns the server's own actor, used to sign fetches. Creates it if needed.

    https://seb.jambor.dev/posts/understanding-activitypub-part-4-threads/#the-instance-actor
    """
    global _INSTANCE_ACTOR

    if _INSTANCE_ACTOR is None:
        store = store or default_storage
        id = common.host_url('actor')
        actor = store.get_actor(id)
        if not actor:
            actor = Actor.new_local(common.LOCAL_DOMAIN, id=id, type='Application',
                                    manually_approves_followers=True)
            store.put_actor(actor)
        _INSTANCE_ACTOR = actor

    return _INSTANCE_ACTOR


def signed_get(url, from_actor=None, **kwargs):
    return signed_request(util.requests_get, url, from_actor=from_actor, **kwargs)


def signed_post(url, data, from_actor, **kwargs):
    assert from_actor
    return signed_request(util.requests_post, url, data=data,
                          from_actor=from_actor, **kwargs)


def signed_request(fn, url, data=None, headers=None, from_actor=None,
                   _redirect_count=None, **kwargs):
    """Wraps ``requests.*`` and adds HTTP Signature.

    https://swicg.github.io/activitypub-http-signature/

    Args:
      fn (callable): :func:`util.requests_get` or  :func:`util.requests_post`
      url (str):
      data (dict): optional AS2 object
      headers (dict): optional
      from_actor (models.Actor): local actor to sign the request as; optional.
        Defaults to :func:`instance_actor`.
      _redirect_count: internal, used to count redirects followed so far
      kwargs: passed through to requests

    Returns:
      requests.Response:
    """
    if not from_actor or not from_actor.is_local:
        from_actor = instance_actor()

    body = b''
    if data is not None:
        logger.debug(f'Sending AS2 object: {json_dumps(data, indent=2)}')
        body = data if isinstance(data, bytes) else json_dumps(data).encode()

    method = 'POST' if fn == util.requests_post else 'GET'
    signed_headers = signature.sign(method, url, body, from_actor.key_id,
                                    from_actor.private_pem(), headers={
        **(headers or {}),
        'Content-Type': as2.CONTENT_TYPE_LD_PROFILE,
    })

    kwargs.setdefault('timeout', common.HTTP_TIMEOUT)
    resp = fn(url, data=body or None, headers=signed_headers,
              allow_redirects=False, **kwargs)

    # handle GET redirects manually so that we generate a new HTTP signature
    if resp.is_redirect and fn == util.requests_get:
        new_url = urljoin(url, resp.headers['Location'])
        if _redirect_count is None:
            _redirect_count = 0
        elif _redirect_count > DEFAULT_REDIRECT_LIMIT:
            raise TooManyRedirects(response=resp)

        return signed_request(fn, new_url, data=data, from_actor=from_actor,
                              headers=headers, _redirect_count=_redirect_count + 1,
                              **kwargs)

    return resp


def fetch(url, from_actor=None):
    """Fetches a URL as AS2, with an HTTP Signature.

    Mastodon requires the signature if ``AUTHORIZED_FETCH`` aka secure mode is
    on: https://docs.joinmastodon.org/admin/config/#authorized_fetch

    Args:
      url (str)
      from_actor (models.Actor): optional local actor to sign as

    Returns:
      dict: AS2 object

    Raises:
      FetchError: with ``status`` set if we got an HTTP error response
    """
    if not util.is_web(url):
        raise FetchError(f'{url} is not a URL', status=400)

    def _error(msg, status=None):
        msg = f"Couldn't fetch {url} as ActivityStreams 2: {msg}"
        logger.warning(msg)
        raise FetchError(msg, status=status)

    try:
        resp = signed_get(url, from_actor=from_actor, headers=as2.CONNEG_HEADERS)
    except (requests.RequestException, OSError) as e:
        _error(str(e))

    if not resp.ok:
        _error(f'HTTP {resp.status_code}', status=resp.status_code)
    elif not resp.content:
        _error('empty response')
    elif common.content_type(resp) not in tuple(as2.CONTENT_TYPES) + (
            'application/activity+json', 'application/json'):
        _error(f'unsupported content type {common.content_type(resp)}')

    try:
        obj = resp.json()
    except requests.JSONDecodeError:
        _error("Couldn't decode as JSON")

    if not isinstance(obj, dict):
        _error(f'got non-object: {obj!r}'[:200])

    return obj


def fetch_actor(url, from_actor=None):
    """Fetches an actor document. Follows ``owner`` if ``url`` is a key.

    https://swicg.github.io/activitypub-http-signature/#how-to-obtain-a-signature-s-public-key

    Returns:
      dict: AS2 actor

    Raises:
      FetchError:
    """
    doc = fetch(url, from_actor=from_actor)

    if doc.get('type') not in ACTOR_TYPES:
        owner = doc.get('owner') or doc.get('controller')
        if owner and fragmentless(owner) != fragmentless(url):
            logger.debug(f'{url} has owner {owner}, fetching that')
            doc = fetch(fragmentless(owner), from_actor=from_actor)

    return doc


def actor_from_as2(doc, existing=None):
    """Converts an AS2 actor document to an :class:`Actor`.

    Args:
      doc (dict): AS2 actor
      existing (models.Actor): optional, cached record to update. Health fields
        are carried over.

    Returns:
      models.Actor:

    Raises:
      ValueError: if ``doc`` isn't a usable actor
    """
    id = doc.get('id')
    if doc.get('type') not in ACTOR_TYPES:
        raise ValueError(f'{id} is a {doc.get("type")}, not an actor')
    elif not id or not util.is_web(id):
        raise ValueError(f'Actor has invalid id {id!r}')
    elif not doc.get('inbox'):
        raise ValueError(f'Actor {id} has no inbox')

    key = doc.get('publicKey') or {}
    if isinstance(key, list):
        key = key[0] if key else {}

    aka = doc.get('alsoKnownAs') or []
    if isinstance(aka, str):
        aka = [aka]

    fields = {
        'id': id,
        'username': doc.get('preferredUsername') or id.rstrip('/').split('/')[-1],
        'host': normalize_host(id),
        'type': doc['type'],
        'inbox': doc['inbox'],
        'shared_inbox': (doc.get('endpoints') or {}).get('sharedInbox'),
        'public_key_pem': key.get('publicKeyPem'),
        'name': doc.get('name'),
        'summary': doc.get('summary'),
        'also_known_as': [a for a in aka if isinstance(a, str)],
        'moved_to': as1.get_object(doc, 'movedTo').get('id'),
        'manually_approves_followers': bool(doc.get('manuallyApprovesFollowers')),
    }

    if existing:
        return existing.copy(**fields)
    return Actor(**fields)


#
# builders for activities we send
#
def accept_activity(follow, actor):
    """Builds an ``Accept`` for an inbound ``Follow``.

    Args:
      follow (dict): AS2 Follow activity
      actor (models.Actor): local actor being followed

    Returns:
      dict: AS2 Accept activity
    """
    return {
        '@context': as2.CONTEXT,
        'id': f'{actor.id}#accepts/follows/{new_id()}',
        'type': 'Accept',
        'actor': actor.id,
        'object': {
            'id': follow.get('id'),
            'type': 'Follow',
            'actor': as1.get_object(follow, 'actor').get('id'),
            'object': as1.get_object(follow).get('id'),
        },
    }


def follow_activity(follower, followee_id, id=None):
    """Builds a ``Follow`` from a local actor.

    Args:
      follower (models.Actor): local actor
      followee_id (str)
      id (str): optional activity id

    Returns:
      dict: AS2 Follow activity
    """
    return {
        '@context': as2.CONTEXT,
        'id': id or f'{follower.id}#follows/{new_id()}',
        'type': 'Follow',
        'actor': follower.id,
        'object': followee_id,
    }


def undo_activity(actor, activity):
    """Builds an ``Undo`` of one of ``actor``'s activities."""
    inner = {k: v for k, v in activity.items() if k != '@context'}
    return {
        '@context': as2.CONTEXT,
        'id': f'{actor.id}#undos/{new_id()}',
        'type': 'Undo',
        'actor': actor.id,
        'object': inner,
    }
