"""WebFinger account discovery client.

Turns a handle like ``@alice@example.com`` into an actor id.

* https://webfinger.net/
* https://docs.joinmastodon.org/spec/webfinger/
"""
from datetime import timedelta
import logging

from granary import as2
from oauth_dropins.webutil import util
from oauth_dropins.webutil.util import json_dumps

import common
from common import DiscoveryFailed
from domains import DOMAIN_RE, normalize_host
import memcache

logger = logging.getLogger(__name__)


def parse_handle(handle):
    """Splits a fediverse handle into username and host.

    Args:
      handle (str): eg ``@alice@example.com``, ``alice@example.com``, or
        ``acct:alice@example.com``

    Returns:
      (str, str) tuple: username, lower cased host

    Raises:
      ValueError: if ``handle`` isn't a valid handle
    """
    if not handle or not isinstance(handle, str):
        raise ValueError(f'Invalid handle {handle!r}')

    handle = handle.strip().removeprefix('acct:').strip('@')
    username, sep, host = handle.partition('@')
    if not (username and sep and host
            and (DOMAIN_RE.fullmatch(host) or host.lower() == common.LOCAL_DOMAIN)):
        raise ValueError(f'Invalid handle {handle!r}')

    return username, normalize_host(host)


def fetch(addr):
    """Fetches and returns an address's WebFinger data.

    Args:
      addr (str): a Webfinger-compatible address, eg ``@x@y``, ``acct:x@y``, or
        ``https://x/y``

    Returns:
      dict: fetched WebFinger data

    Raises:
      common.DiscoveryFailed: on network error, non-2xx response, or bad JSON
      ValueError: if ``addr`` isn't a handle or URL
    """
    if util.is_web(addr):
        addr_domain = util.domain_from_link(addr, minimize=False)
        resource = addr
    else:
        username, addr_domain = parse_handle(addr)
        resource = f'acct:{username}@{addr_domain}'

    url = f'https://{addr_domain}/.well-known/webfinger?resource={resource}'
    try:
        resp = util.requests_get(url, timeout=common.HTTP_TIMEOUT)
    except BaseException as e:
        if util.is_connection_failure(e):
            raise DiscoveryFailed(f"Couldn't connect to {addr_domain}")
        raise

    if not resp.ok:
        raise DiscoveryFailed(f'WebFinger on {addr_domain} returned HTTP {resp.status_code}')

    try:
        data = resp.json()
    except ValueError as e:
        logger.warning(f'Got {e}', exc_info=True)
        raise DiscoveryFailed(f'WebFinger on {addr_domain} returned non-JSON')

    if not isinstance(data, dict):
        raise DiscoveryFailed(f'WebFinger on {addr_domain} returned non-object')

    logger.debug(f'Got: {json_dumps(data, indent=2)}')
    return data


@memcache.memoize(expire=timedelta(hours=1))
def fetch_actor_url(addr):
    """Fetches and returns a WebFinger address's ActivityPub actor URL.

    Only successful lookups are cached.

    Args:
      addr (str): a Webfinger-compatible address, eg ``@x@y``, ``acct:x@y``, or
        ``https://x/y``

    Returns:
      str: ActivityPub actor URL

    Raises:
      common.DiscoveryFailed: if the lookup fails or has no AS2 ``self`` link
    """
    data = fetch(addr)

    for link in data.get('links', []):
        type = link.get('type', '').split(';')[0]
        if (link.get('rel') == 'self' and link.get('href')
                and (type in as2.CONTENT_TYPES or type == 'application/activity+json')):
            return link['href']

    raise DiscoveryFailed(f'No ActivityPub actor in WebFinger for {addr}')
