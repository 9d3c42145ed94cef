"""Memcache clients and a memoize decorator.

Used for the Received-Activity ledger's fast path and for caching WebFinger
lookups. Set ``MEMCACHE_HOST`` to use a real server, eg Memorystore. Otherwise,
and always in dev, both clients are in memory mocks.
"""
import functools
import logging
import os

from oauth_dropins.webutil import appengine_info
from pymemcache.client.base import PooledClient
from pymemcache.serde import PickleSerde
from pymemcache.test.utils import MockMemcacheClient

logger = logging.getLogger(__name__)

# https://github.com/memcached/memcached/wiki/Commands#standard-protocol
KEY_MAX_LEN = 250

MEMOIZE_VERSION = 2

CLIENT_KWARGS = {
    'allow_unicode_keys': True,
    'default_noreply': False,
    'timeout': 10,   # seconds
    'connect_timeout': 10,   # seconds
}


def _client(**kwargs):
    host = os.environ.get('MEMCACHE_HOST')
    if appengine_info.DEBUG or appengine_info.LOCAL_SERVER or not host:
        return MockMemcacheClient(**CLIENT_KWARGS, **kwargs)
    return PooledClient(host, **CLIENT_KWARGS, **kwargs)


# plain values, eg ledger markers
memcache = _client()
# arbitrary picklable values, eg memoized return values
pickle_memcache = _client(serde=PickleSerde())
logger.info(f'Using memcache {memcache.__class__.__name__}')


def key(val):
    """Makes a memcache key: escapes spaces and truncates to :data:`KEY_MAX_LEN`.

    Args:
      val (str)

    Returns:
      bytes:
    """
    assert isinstance(val, str), repr(val)
    return val.replace(' ', '%20').encode()[:KEY_MAX_LEN]


def memoize_key(fn, *args, _version=MEMOIZE_VERSION, **kwargs):
    return key(f'{fn.__qualname__}-{_version}-{args!r}-{kwargs!r}')


def memoize(expire=None, key=None, write=True, version=MEMOIZE_VERSION):
    """Decorator that caches a function's return value in :data:`pickle_memcache`.

    Only return values are cached. If the function raises, nothing is stored,
    so eg a failed remote lookup is retried on the next call.

    Args:
      expire (datetime.timedelta): optional
      key (callable): takes the function's ``(*args, **kwargs)``, returns the
        value to build the cache key from. If it returns None, the cache is
        skipped.
      write (bool or callable): whether to store the result. A callable gets
        the function's ``(*args, **kwargs)``.
      version (int): part of the cache key. Bump to invalidate old entries.
    """
    expire = int(expire.total_seconds()) if expire else 0

    def cache_key(fn, args, kwargs):
        if not key:
            return memoize_key(fn, *args, _version=version, **kwargs)
        if (val := key(*args, **kwargs)) is not None:
            return memoize_key(fn, val, _version=version)

    def should_write(args, kwargs):
        return write if isinstance(write, bool) else write(*args, **kwargs)

    def decorator(fn):
        @functools.wraps(fn)
        def wrapped(*args, **kwargs):
            ckey = cache_key(fn, args, kwargs)
            if not ckey:
                return fn(*args, **kwargs)

            # values are stored wrapped in a 1-tuple so that None and str
            # round trip. memcache returns None for a miss, and the mock
            # client encodes bare str to bytes.
            cached = pickle_memcache.get(ckey)
            if cached is not None:
                logger.debug(f'cache hit {ckey}')
                return cached[0]

            logger.debug(f'cache miss {ckey}')
            val = fn(*args, **kwargs)
            if should_write(args, kwargs):
                pickle_memcache.set(ckey, (val,), expire=expire)
            return val

        return wrapped

    return decorator
