"""Received-Activity ledger: dedupes inbound activities by id.

A request that's about to handle an activity first :meth:`Ledger.claim`s it,
which atomically inserts a short lease tagged with a random token. While the
handler runs, :meth:`Ledger.holding` keeps renewing that lease, so a slow
handler never lets a redelivery claim the same id. Only after the handler
succeeds does it :meth:`Ledger.mark_seen`, which makes the record permanent.
If the handler fails, :meth:`Ledger.release` deletes the lease so that the
sender's retry can succeed.

Leases only expire when their holder stops renewing them, ie it crashed.
"""
from contextlib import contextmanager
from datetime import timedelta
import logging
import threading

from oauth_dropins.webutil import util

import common
import memcache
from models import new_id, ReceivedActivity
from storage import storage as default_storage

logger = logging.getLogger(__name__)

SEEN_MEMCACHE_EXPIRATION = timedelta(weeks=1)


def activity_id_memcache_key(id):
    return memcache.key(f'receive-{id}')


class Ledger:
    """
    Args:
      store (storage.Storage): optional, defaults to :data:`storage.storage`
      lease (datetime.timedelta): how long a claim blocks concurrent
        deliveries of the same id without being renewed

    Attributes:
      in_flight (set of str): ids this process is currently handling. These
        are never claimable here, even if their stored lease has lapsed.
    """
    def __init__(self, store=None, lease=common.LEASE_EXPIRATION):
        self.store = store or default_storage
        self.lease = lease
        self.in_flight = set()
        self._lock = threading.Lock()

    def has_seen(self, activity_id):
        """Returns True if ``activity_id`` has already been handled successfully."""
        assert activity_id
        if memcache.memcache.get(activity_id_memcache_key(activity_id)):
            return True

        received = self.store.get_received_activity(activity_id)
        return bool(received and received.status == 'done')

    def claim(self, activity_id):
        """Atomically claims an activity id for handling.

        Returns:
          str or None: the claim's token if the caller now owns ``activity_id``
          and should handle it, None if it's already done or another request
          is handling it
        """
        assert activity_id
        with self._lock:
            if activity_id in self.in_flight:
                logger.info(f'{activity_id} is already being handled in this process')
                return None
            self.in_flight.add(activity_id)

        token = new_id()
        try:
            claimed = self.store.claim_received_activity(
                activity_id, now=util.now(), lease=self.lease, token=token)
        except BaseException:
            self._finish(activity_id)
            raise

        if not claimed:
            logger.info(f'{activity_id} is already done or being handled')
            self._finish(activity_id)
            return None

        return token

    def renew(self, activity_id, token):
        """Extends a claim's lease. Returns False if ``token`` no longer holds it."""
        renewed = self.store.renew_received_activity(
            activity_id, token, now=util.now(), lease=self.lease)
        if not renewed:
            logger.warning(f'Lost lease on {activity_id}')
        return renewed

    @contextmanager
    def holding(self, activity_id, token):
        """Context manager that renews a claim's lease until the block exits.

        Renews every third of :attr:`lease` on a background thread.
        """
        stop = threading.Event()
        interval = self.lease.total_seconds() / 3

        def heartbeat():
            while not stop.wait(interval):
                try:
                    if not self.renew(activity_id, token):
                        return
                except Exception as e:
                    # retried on the next beat, before the lease lapses
                    logger.warning(f"Couldn't renew lease on {activity_id}: {e}")

        thread = threading.Thread(target=heartbeat, daemon=True,
                                  name=f'lease-{activity_id}'[:64])
        thread.start()
        try:
            yield
        finally:
            stop.set()
            thread.join()

    def mark_seen(self, activity_id, token=None):
        """Marks a claimed activity as done. Only call after the handler succeeds.

        Args:
          activity_id (str)
          token (str): optional, the claim's token. If provided, and the
            claim was taken over by another request, logs a warning.

        Returns:
          bool: False if ``token`` had lost its lease, True otherwise
        """
        assert activity_id
        try:
            received = self.store.get_received_activity(activity_id)
            held = (token is None
                    or bool(received and received.status == 'leased'
                            and received.token == token))
            if not held:
                logger.warning(f'Lease on {activity_id} was taken over before it finished')

            if not received:
                # claim wasn't stored, eg it expired and was pruned. write a new one.
                received = ReceivedActivity(activity_id=activity_id)

            received.status = 'done'
            received.leased_until = None
            received.token = None
            self.store.put_received_activity(received)
            memcache.memcache.set(activity_id_memcache_key(activity_id), 'done',
                                  expire=int(SEEN_MEMCACHE_EXPIRATION.total_seconds()))
        finally:
            self._finish(activity_id)

        return held

    def release(self, activity_id, token=None):
        """Drops a claim without marking the activity seen, eg after a failure.

        If ``token`` is provided, only drops the claim if it still holds it.
        """
        assert activity_id
        try:
            received = self.store.get_received_activity(activity_id)
            if (received and received.status != 'done'
                    and (token is None or received.token == token)):
                logger.info(f'Releasing claim on {activity_id}')
                self.store.delete_received_activity(activity_id)
        finally:
            self._finish(activity_id)

    def _finish(self, activity_id):
        with self._lock:
            self.in_flight.discard(activity_id)

    def prune(self, older_than=None):
        """Deletes done records received longer ago than the retention period.

        Returns:
          int: number of records deleted
        """
        if older_than is None:
            older_than = common.RECEIVED_ACTIVITY_RETENTION
        count = self.store.delete_received_activities_before(util.now() - older_than)
        logger.info(f'Pruned {count} received activities older than {older_than}')
        return count


ledger = Ledger()
