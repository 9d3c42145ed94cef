"""Remote instance metadata cache, via NodeInfo.

NodeInfo discovery is two hops: ``/.well-known/nodeinfo`` links to the actual
NodeInfo document, which has the software name and version, registration
status, and usage counts.

* https://nodeinfo.diaspora.software/protocol.html
* https://github.com/jhass/nodeinfo/blob/main/PROTOCOL.md

Results are cached per host for :attr:`common.INSTANCE_TTL`. After
:attr:`common.INSTANCE_MAX_ERRORS` consecutive failures, a host is no longer
fetched automatically until an operator forces a refresh.
"""
import logging
import threading

from oauth_dropins.webutil import util
import requests

import common
from domains import normalize_host
from models import RemoteInstance
from storage import storage as default_storage

logger = logging.getLogger(__name__)

# in order of preference
NODEINFO_SCHEMAS = (
    'http://nodeinfo.diaspora.software/ns/schema/2.1',
    'http://nodeinfo.diaspora.software/ns/schema/2.0',
)


class NodeInfoError(Exception):
    pass


def _get_json(url):
    try:
        resp = util.requests_get(url, timeout=common.HTTP_TIMEOUT)
    except requests.RequestException as e:
        raise NodeInfoError(f"Couldn't fetch {url}: {e}")

    if not resp.ok:
        raise NodeInfoError(f'{url} returned HTTP {resp.status_code}')

    try:
        data = resp.json()
    except ValueError:
        raise NodeInfoError(f'{url} returned non-JSON')

    if not isinstance(data, dict):
        raise NodeInfoError(f'{url} returned non-object')

    return data


def fetch_nodeinfo(host):
    """Fetches a host's NodeInfo document.

    Args:
      host (str)

    Returns:
      dict: NodeInfo

    Raises:
      NodeInfoError: if either hop fails or there's no supported NodeInfo link
    """
    well_known = _get_json(f'https://{host}/.well-known/nodeinfo')

    links = well_known.get('links')
    if not isinstance(links, list):
        raise NodeInfoError(f'{host} NodeInfo discovery has no links')

    hrefs = {link.get('rel'): link.get('href')
             for link in links if isinstance(link, dict)}
    for schema in NODEINFO_SCHEMAS:
        href = hrefs.get(schema)
        if href and isinstance(href, str):
            break
    else:
        raise NodeInfoError(f'{host} has no supported NodeInfo link')

    if not util.is_web(href) or normalize_host(href) != host:
        logger.info(f'{host} NodeInfo is on a different host: {href}')

    return _get_json(href)


def _dict(val):
    return val if isinstance(val, dict) else {}


def _str(val):
    return val if isinstance(val, str) and val else None


def _int(val):
    return val if isinstance(val, int) and not isinstance(val, bool) else None


def instance_fields(nodeinfo):
    """Extracts :class:`models.RemoteInstance` fields from NodeInfo.

    Fields with missing or wrongly typed values are None.
    """
    software = _dict(nodeinfo.get('software'))
    usage = _dict(nodeinfo.get('usage'))
    users = _dict(usage.get('users'))
    metadata = _dict(nodeinfo.get('metadata'))

    name = _str(software.get('name'))
    open_registrations = nodeinfo.get('openRegistrations')

    return {
        'software_name': name.lower() if name else None,
        'software_version': _str(software.get('version')),
        'name': _str(metadata.get('nodeName')) or _str(metadata.get('name')),
        'description': (_str(metadata.get('nodeDescription'))
                        or _str(metadata.get('description'))),
        'open_registrations': (open_registrations
                               if isinstance(open_registrations, bool) else None),
        'users_count': _int(users.get('total')),
        'notes_count': _int(usage.get('localPosts')),
    }


class InstanceInfoCache:
    """
    Args:
      store (storage.Storage): optional, defaults to :data:`storage.storage`
      ttl (datetime.timedelta)
      max_errors (int): circuit breaker ceiling
      max_workers (int): background refresh concurrency
    """
    def __init__(self, store=None, ttl=None, max_errors=None,
                 max_workers=common.INSTANCE_REFRESH_BATCH):
        self.store = store or default_storage
        self.ttl = ttl or common.INSTANCE_TTL
        self.max_errors = (common.INSTANCE_MAX_ERRORS if max_errors is None
                           else max_errors)
        self.locks = common.KeyedLocks()
        self._refreshing = set()
        self._refreshing_lock = threading.Lock()
        self._executor = common.new_executor(max_workers, 'instance-refresh')

    def get_info(self, host, force=False):
        """Returns a host's cached instance info, fetching it if necessary.

        Args:
          host (str)
          force (bool): operator override. Fetches even if the cache is fresh
            or the circuit breaker is open.

        Returns:
          models.RemoteInstance or None: None if we've never fetched this
          host's NodeInfo successfully
        """
        host = normalize_host(host)
        if not host:
            return None

        with self.locks(host):
            cached = self.store.get_remote_instance(host)
            if cached and not force:
                if not cached.is_stale(ttl=self.ttl):
                    return cached
                elif self.breaker_open(cached):
                    logger.debug(f'{host} has {cached.fetch_error_count} errors, not refetching')
                    return self._result(cached)

            return self._result(self._refresh(host, cached))

    def get_info_batch(self, hosts):
        """Returns cached info for many hosts and refreshes the rest in the background.

        Args:
          hosts (iterable of str)

        Returns:
          dict: maps host to :class:`models.RemoteInstance`, only for hosts
          we have successfully fetched info for
        """
        hosts = {normalize_host(h) for h in hosts} - {None}
        cached = self.store.get_remote_instances(hosts)

        for host in sorted(hosts):
            instance = cached.get(host)
            if not instance or (instance.is_stale(ttl=self.ttl)
                                and not self.breaker_open(instance)):
                self.refresh_in_background(host)

        return {host: inst for host, inst in cached.items() if inst.last_fetched_at}

    def refresh_in_background(self, host):
        with self._refreshing_lock:
            if host in self._refreshing:
                return
            self._refreshing.add(host)

        def refresh():
            try:
                with self.locks(host):
                    self._refresh(host, self.store.get_remote_instance(host))
            finally:
                with self._refreshing_lock:
                    self._refreshing.discard(host)

        common.run_in_background(self._executor, refresh)

    def refresh_stale(self, limit=20):
        """Refreshes up to ``limit`` stale hosts, oldest first. For cron.

        Returns:
          int: number of hosts refreshed
        """
        stale = self.store.find_stale_remote_instances(
            util.now() - self.ttl, self.max_errors, limit=limit)
        logger.info(f'Refreshing {len(stale)} stale instances')
        for instance in stale:
            self.refresh_in_background(instance.host)
        return len(stale)

    def breaker_open(self, instance):
        return instance.fetch_error_count >= self.max_errors

    def _refresh(self, host, cached):
        """Fetches NodeInfo and updates the cache. Must hold this host's lock."""
        now = util.now()
        instance = cached or RemoteInstance(host=host)
        instance.last_fetch_attempt_at = now

        try:
            nodeinfo = fetch_nodeinfo(host)
        except NodeInfoError as e:
            instance.fetch_error_count += 1
            instance.last_fetch_error = str(e)
            logger.warning(f'NodeInfo for {host} failed, {instance.fetch_error_count} errors: {e}')
            return self.store.put_remote_instance(instance)

        instance = instance.copy(**instance_fields(nodeinfo), last_fetched_at=now,
                                 fetch_error_count=0, last_fetch_error=None)
        logger.info(f'Got NodeInfo for {host}: {instance.software_name} {instance.software_version}')
        return self.store.put_remote_instance(instance)

    @staticmethod
    def _result(instance):
        return instance if instance and instance.last_fetched_at else None


instances = InstanceInfoCache()
