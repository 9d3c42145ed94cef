"""Utilities for working with DNS domain names, and the instance blocklist."""
import logging
import re

from oauth_dropins.webutil import util

import common
from models import InstanceBlock
from storage import storage as default_storage

logger = logging.getLogger(__name__)

# allow hostname chars (a-z, 0-9, -), allow arbitrary unicode (eg ☃.net), don't
# allow specific chars that we'll often see in webfinger, AP handles, etc. (@, :)
# https://stackoverflow.com/questions/10306690/what-is-a-regular-expression-which-will-match-a-valid-domain-name-without-a-subd
DOMAIN_RE = re.compile(r'([^/:;@?!\'.]+\.)+[^/:@_?!\'.]+')


def normalize_host(host):
    """Lower cases a hostname and strips any trailing dot and port.

    Args:
      host (str): hostname or URL

    Returns:
      str or None:
    """
    if not host:
        return None

    if util.is_web(host):
        host = util.domain_from_link(host, minimize=False)

    host = host.strip().lower().rstrip('.')
    if ':' in host and not host.startswith('['):
        host = host.split(':')[0]
    return host or None


class BlockGuard:
    """Yes/no membership check against the moderator-maintained blocklist.

    Args:
      store (storage.Storage): optional, defaults to :data:`storage.storage`
    """
    def __init__(self, store=None):
        self.store = store or default_storage

    def is_allowed(self, host):
        """Returns False if ``host`` is blocked, True otherwise. No side effects.

        Args:
          host (str): hostname or URL, case insensitive

        Returns:
          bool:
        """
        host = normalize_host(host)
        if not host or host == common.LOCAL_DOMAIN:
            return True

        if self.store.get_instance_block(host):
            logger.info(f'{host} is blocked')
            return False

        return True

    def block(self, host, reason=None, blocked_by=None):
        """Adds a host to the blocklist. Only for the moderation collaborator.

        Returns:
          models.InstanceBlock:
        """
        host = normalize_host(host)
        assert host
        block = InstanceBlock(host=host, reason=reason, blocked_by=blocked_by)
        logger.info(f'{blocked_by} blocked {host}: {reason}')
        return self.store.put_instance_block(block)

    def unblock(self, host):
        host = normalize_host(host)
        logger.info(f'Unblocking {host}')
        self.store.delete_instance_block(host)

    def blocks(self):
        return self.store.find_instance_blocks()


guard = BlockGuard()


def is_allowed(host):
    return guard.is_allowed(host)
