"""Repositories for the CRUD collaborators that the federation core uses.

:class:`Storage` is the contract. :class:`MemoryStorage` is a thread safe
in-memory implementation, used in development and tests.
:class:`datastore.NdbStorage` is the Google Cloud Datastore implementation.

All methods take and return :mod:`models` records. Returned records are copies;
callers modify them and ``put_*`` them back.
"""
import copy
import logging
import os
import threading

from oauth_dropins.webutil.appengine_info import DEBUG

from models import (
    Actor,
    Follow,
    InstanceBlock,
    new_id,
    Note,
    Notification,
    Reaction,
    ReceivedActivity,
    RemoteInstance,
)

logger = logging.getLogger(__name__)


class Storage:
    """Abstract base class for storage backends. Not to be instantiated."""

    #
    # actors
    #
    def get_actor(self, id):
        """
        Args:
          id (str): actor id, ie URL

        Returns:
          models.Actor or None:
        """
        raise NotImplementedError()

    def find_actor(self, username, host=None):
        """Finds an actor by username and host. ``host`` None means local."""
        raise NotImplementedError()

    def put_actor(self, actor):
        raise NotImplementedError()

    def find_actors_with_fetch_errors(self, limit=100):
        """Returns remote actors with ``fetch_failure_count > 0``."""
        raise NotImplementedError()

    #
    # notes
    #
    def get_note(self, id):
        raise NotImplementedError()

    def find_note_by_uri(self, uri):
        raise NotImplementedError()

    def put_note(self, note):
        raise NotImplementedError()

    #
    # follows
    #
    def get_follow(self, follower_id, followee_id):
        raise NotImplementedError()

    def find_follow_by_activity(self, activity_id):
        raise NotImplementedError()

    def find_follows(self, *, follower_id=None, followee_id=None):
        raise NotImplementedError()

    def get_or_create_follow(self, follower_id, followee_id, **kwargs):
        """Atomically returns the existing follow edge or creates a new one.

        Returns:
          (models.Follow, bool) tuple: the follow and whether it was created
        """
        raise NotImplementedError()

    def put_follow(self, follow):
        raise NotImplementedError()

    def delete_follow(self, id):
        raise NotImplementedError()

    #
    # reactions
    #
    def find_reaction(self, actor_id, note_id, reaction=None):
        """Finds a reaction by an actor on a note, optionally with a given value."""
        raise NotImplementedError()

    def find_reaction_by_activity(self, activity_id):
        raise NotImplementedError()

    def put_reaction(self, reaction):
        raise NotImplementedError()

    def delete_reaction(self, id):
        raise NotImplementedError()

    #
    # notifications
    #
    def put_notification(self, notification):
        raise NotImplementedError()

    def find_notifications(self, notifiee_id):
        raise NotImplementedError()

    #
    # received activities
    #
    def get_received_activity(self, activity_id):
        raise NotImplementedError()

    def claim_received_activity(self, activity_id, now, lease, token=None):
        """Atomically inserts a leased record if no live record exists.

        An existing ``done`` record, or a ``leased`` record whose lease hasn't
        expired, blocks the claim.

        Args:
          activity_id (str)
          now (datetime)
          lease (timedelta)
          token (str): optional, stored on the record to identify this claim

        Returns:
          bool: True if this caller now holds the lease, False otherwise
        """
        raise NotImplementedError()

    def renew_received_activity(self, activity_id, token, now, lease):
        """Atomically extends a lease, only if ``token`` still holds it.

        Returns:
          bool: False if the record is gone, done, or claimed by another token
        """
        raise NotImplementedError()

    def put_received_activity(self, received):
        raise NotImplementedError()

    def delete_received_activity(self, activity_id):
        raise NotImplementedError()

    def delete_received_activities_before(self, cutoff):
        """Deletes ``done`` records received before ``cutoff``. Returns count."""
        raise NotImplementedError()

    #
    # remote instances
    #
    def get_remote_instance(self, host):
        raise NotImplementedError()

    def get_remote_instances(self, hosts):
        """Returns dict mapping host to :class:`RemoteInstance`, cached only."""
        raise NotImplementedError()

    def put_remote_instance(self, instance):
        raise NotImplementedError()

    def find_stale_remote_instances(self, cutoff, max_errors, limit=20):
        """Returns instances last fetched before ``cutoff``, oldest first,
        with fewer than ``max_errors`` errors."""
        raise NotImplementedError()

    #
    # instance blocks
    #
    def get_instance_block(self, host):
        raise NotImplementedError()

    def put_instance_block(self, block):
        raise NotImplementedError()

    def delete_instance_block(self, host):
        raise NotImplementedError()

    def find_instance_blocks(self):
        raise NotImplementedError()

    def clear(self):
        """Deletes everything. Only for tests and development."""
        raise NotImplementedError()


class MemoryStorage(Storage):
    """In-memory storage. All methods hold one lock, so they're all atomic."""

    def __init__(self):
        self._lock = threading.RLock()
        self.clear()

    def clear(self):
        with self._lock:
            self.actors = {}
            self.notes = {}
            self.follows = {}
            self.reactions = {}
            self.notifications = {}
            self.received = {}
            self.instances = {}
            self.blocks = {}

    def _get(self, table, key):
        with self._lock:
            return copy.deepcopy(table.get(key))

    def _put(self, table, key, record):
        with self._lock:
            table[key] = copy.deepcopy(record)
        logger.debug(f'Wrote {type(record).__name__} {key}')
        return record

    def _find(self, table, pred):
        with self._lock:
            return [copy.deepcopy(r) for r in table.values() if pred(r)]

    def _find_one(self, table, pred):
        found = self._find(table, pred)
        return found[0] if found else None

    # actors
    def get_actor(self, id):
        return self._get(self.actors, id)

    def find_actor(self, username, host=None):
        return self._find_one(self.actors, lambda a: a.username == username
                              and a.host == host)

    def put_actor(self, actor):
        assert isinstance(actor, Actor)
        return self._put(self.actors, actor.id, actor)

    def find_actors_with_fetch_errors(self, limit=100):
        return self._find(self.actors, lambda a: a.fetch_failure_count > 0)[:limit]

    # notes
    def get_note(self, id):
        return self._get(self.notes, id)

    def find_note_by_uri(self, uri):
        if not uri:
            return None
        return self._find_one(self.notes, lambda n: n.uri == uri)

    def put_note(self, note):
        assert isinstance(note, Note)
        return self._put(self.notes, note.id, note)

    # follows
    def get_follow(self, follower_id, followee_id):
        return self._find_one(self.follows, lambda f: f.follower_id == follower_id
                              and f.followee_id == followee_id)

    def find_follow_by_activity(self, activity_id):
        if not activity_id:
            return None
        return self._find_one(self.follows, lambda f: f.activity_id == activity_id)

    def find_follows(self, *, follower_id=None, followee_id=None):
        return self._find(self.follows, lambda f:
                          (follower_id is None or f.follower_id == follower_id)
                          and (followee_id is None or f.followee_id == followee_id))

    def get_or_create_follow(self, follower_id, followee_id, **kwargs):
        with self._lock:
            if existing := self.get_follow(follower_id, followee_id):
                return existing, False
            follow = Follow(id=new_id(), follower_id=follower_id,
                            followee_id=followee_id, **kwargs)
            self.put_follow(follow)
            return follow, True

    def put_follow(self, follow):
        assert isinstance(follow, Follow)
        return self._put(self.follows, follow.id, follow)

    def delete_follow(self, id):
        with self._lock:
            self.follows.pop(id, None)

    # reactions
    def find_reaction(self, actor_id, note_id, reaction=None):
        return self._find_one(self.reactions, lambda r: r.actor_id == actor_id
                              and r.note_id == note_id
                              and (reaction is None or r.reaction == reaction))

    def find_reaction_by_activity(self, activity_id):
        if not activity_id:
            return None
        return self._find_one(self.reactions, lambda r: r.activity_id == activity_id)

    def put_reaction(self, reaction):
        assert isinstance(reaction, Reaction)
        return self._put(self.reactions, reaction.id, reaction)

    def delete_reaction(self, id):
        with self._lock:
            self.reactions.pop(id, None)

    # notifications
    def put_notification(self, notification):
        assert isinstance(notification, Notification)
        return self._put(self.notifications, notification.id, notification)

    def find_notifications(self, notifiee_id):
        return self._find(self.notifications, lambda n: n.notifiee_id == notifiee_id)

    # received activities
    def get_received_activity(self, activity_id):
        return self._get(self.received, activity_id)

    def claim_received_activity(self, activity_id, now, lease, token=None):
        with self._lock:
            existing = self.received.get(activity_id)
            if existing and (existing.status == 'done'
                             or (existing.leased_until
                                 and existing.leased_until > now)):
                return False
            self._put(self.received, activity_id, ReceivedActivity(
                activity_id=activity_id, status='leased', received_at=now,
                leased_until=now + lease, token=token))
            return True

    def renew_received_activity(self, activity_id, token, now, lease):
        with self._lock:
            existing = self.received.get(activity_id)
            if (not existing or existing.status != 'leased'
                    or existing.token != token):
                return False
            self._put(self.received, activity_id,
                      existing.copy(leased_until=now + lease))
            return True

    def put_received_activity(self, received):
        assert isinstance(received, ReceivedActivity)
        return self._put(self.received, received.activity_id, received)

    def delete_received_activity(self, activity_id):
        with self._lock:
            self.received.pop(activity_id, None)

    def delete_received_activities_before(self, cutoff):
        with self._lock:
            old = [id for id, r in self.received.items()
                   if r.status == 'done' and r.received_at < cutoff]
            for id in old:
                del self.received[id]
            return len(old)

    # remote instances
    def get_remote_instance(self, host):
        return self._get(self.instances, host)

    def get_remote_instances(self, hosts):
        with self._lock:
            return {host: copy.deepcopy(self.instances[host])
                    for host in hosts if host in self.instances}

    def put_remote_instance(self, instance):
        assert isinstance(instance, RemoteInstance)
        return self._put(self.instances, instance.host, instance)

    def find_stale_remote_instances(self, cutoff, max_errors, limit=20):
        stale = self._find(self.instances, lambda i:
                           i.fetch_error_count < max_errors
                           and (not i.last_fetched_at or i.last_fetched_at < cutoff))
        stale.sort(key=lambda i: (i.last_fetched_at is not None,
                                  i.last_fetched_at or cutoff))
        return stale[:limit]

    # instance blocks
    def get_instance_block(self, host):
        return self._get(self.blocks, host)

    def put_instance_block(self, block):
        assert isinstance(block, InstanceBlock)
        return self._put(self.blocks, block.host, block)

    def delete_instance_block(self, host):
        with self._lock:
            self.blocks.pop(host, None)

    def find_instance_blocks(self):
        return self._find(self.blocks, lambda b: True)


def _default_storage():
    backend = os.getenv('STORAGE') or ('memory' if DEBUG else 'datastore')
    if backend == 'datastore':
        from datastore import NdbStorage
        logger.info('Using Cloud Datastore storage')
        return NdbStorage()

    logger.info('Using in memory storage')
    return MemoryStorage()


storage = _default_storage()
