"""Remote actor resolution cache.

Resolves handles and actor ids to cached :class:`models.Actor` records, fetching
them remotely when they're unknown or stale, and tracks each remote actor's
fetch health so that actors that are permanently gone stop being fetched.

State machine per actor, see :meth:`models.Actor.state`::

  unknown -> fetching -> fresh -> (ttl) -> stale -> fetching -> ...
                      \\-> soft-error -> fetching -> ...
                                     \\-> gone (threshold reached on a
                                         permanent absence signal)

``gone`` is only exited via :meth:`ActorResolver.clear_fetch_failure`.
"""
import logging
import threading

from oauth_dropins.webutil import util

import activitypub
from activitypub import FetchError
import common
from common import UnknownActor
from domains import normalize_host
import models
from models import Actor, FRESH, GONE, STALE, UNKNOWN
from storage import storage as default_storage
import webfinger

logger = logging.getLogger(__name__)


class ActorResolver:
    """
    Args:
      store (storage.Storage): optional, defaults to :data:`storage.storage`
      classifier (common.FailureClassifier): optional
      ttl (datetime.timedelta): how long a fetched actor stays fresh
      gone_threshold (int): consecutive failures, ending in a permanent absence
        signal, before an actor is gone
      max_workers (int): background refresh concurrency
    """
    def __init__(self, store=None, classifier=None, ttl=None,
                 gone_threshold=None, max_workers=common.INSTANCE_REFRESH_BATCH):
        self.store = store or default_storage
        self.classifier = classifier or common.classifier
        self.ttl = ttl or common.ACTOR_TTL
        self.gone_threshold = (common.ACTOR_GONE_THRESHOLD if gone_threshold is None
                               else gone_threshold)
        self.locks = common.KeyedLocks()
        self._fetching = set()
        self._fetching_lock = threading.Lock()
        self._executor = common.new_executor(max_workers, 'actor-refresh')

    def state(self, actor):
        """Returns ``actor``'s state, including transient :data:`models.FETCHING`."""
        with self._fetching_lock:
            if actor.id in self._fetching:
                return models.FETCHING
        return actor.state(ttl=self.ttl, gone_threshold=self.gone_threshold)

    def resolve(self, handle_or_id, require_fresh=False):
        """Resolves a handle or actor id to an actor.

        Handles are first looked up in the cache by username and host, then
        via WebFinger.

        Args:
          handle_or_id (str): eg ``@alice@example.com`` or
            ``https://example.com/users/alice``
          require_fresh (bool): if True, cached actors are always refetched
            synchronously, unless they're gone

        Returns:
          models.Actor:

        Raises:
          common.UnknownActor: if we couldn't fetch an actor that we don't have
            cached data for, or if ``require_fresh`` and the fetch failed
          common.DiscoveryFailed: if WebFinger failed
        """
        if util.is_web(handle_or_id):
            return self.resolve_id(handle_or_id, require_fresh=require_fresh)

        try:
            username, host = webfinger.parse_handle(handle_or_id)
        except ValueError as e:
            raise UnknownActor(str(e))

        if host == common.LOCAL_DOMAIN:
            if actor := self.store.find_actor(username):
                return actor
            raise UnknownActor(f'No local user {username}')

        actor = self.store.find_actor(username, host)
        if not actor:
            id = webfinger.fetch_actor_url(f'{username}@{host}')
            logger.info(f'WebFinger resolved @{username}@{host} to {id}')
            return self.resolve_id(id, require_fresh=require_fresh)

        return self.resolve_id(actor.id, require_fresh=require_fresh)

    def resolve_id(self, id, require_fresh=False):
        """Resolves an actor id. See :meth:`resolve`."""
        id = util.fragmentless(id)
        with self.locks(id):
            actor = self.store.get_actor(id)
            state = (actor.state(ttl=self.ttl, gone_threshold=self.gone_threshold)
                     if actor else UNKNOWN)

            if actor and actor.is_local:
                return actor
            elif not actor and normalize_host(id) == common.LOCAL_DOMAIN:
                raise UnknownActor(f'No local actor {id}')
            elif state == GONE:
                logger.info(f'{id} is gone since {actor.gone_detected_at}, not refetching')
                return actor
            elif state == FRESH and not require_fresh:
                return actor
            elif state == STALE and not require_fresh:
                self.refresh_in_background(id)
                return actor

            logger.info(f'Fetching {id}, state {state}')
            return self._fetch(id, actor, require_fresh=require_fresh)

    def refresh_in_background(self, id):
        """Schedules a refresh of a cached actor, unless one's already running."""
        with self._fetching_lock:
            if id in self._fetching:
                return
            self._fetching.add(id)

        def refresh():
            try:
                with self.locks(id):
                    self._fetch(id, self.store.get_actor(id), background=True)
            except UnknownActor as e:
                logger.info(f'Background refresh of {id} failed: {e}')
            finally:
                with self._fetching_lock:
                    self._fetching.discard(id)

        common.run_in_background(self._executor, refresh)

    def _fetch(self, id, cached, require_fresh=False, background=False):
        """Fetches an actor and updates its cache record and health fields.

        Must be called with this actor's lock held.
        """
        if not background:
            with self._fetching_lock:
                self._fetching.add(id)

        try:
            doc = activitypub.fetch_actor(id)
            actor = activitypub.actor_from_as2(doc, existing=cached)
        except FetchError as e:
            self._record_failure(id, cached, str(e), status=e.status)
            return self._fallback(id, cached, e, require_fresh)
        except ValueError as e:
            logger.warning(f'Bad actor document for {id}: {e}')
            self._record_failure(id, cached, str(e))
            return self._fallback(id, cached, e, require_fresh)
        finally:
            if not background:
                with self._fetching_lock:
                    self._fetching.discard(id)

        if actor.id != id:
            # eg keyId was a separate key document with an owner
            logger.info(f'{id} resolved to actor {actor.id}')
            existing = self.store.get_actor(actor.id)
            actor = activitypub.actor_from_as2(doc, existing=existing)

        now = util.now()
        actor = actor.copy(fetched_at=now, last_fetch_attempt_at=now,
                           fetch_failure_count=0, gone_detected_at=None,
                           last_fetch_error=None, last_fetch_gone=False)
        self.store.put_actor(actor)
        return actor

    def _fallback(self, id, cached, err, require_fresh):
        if cached and cached.fetched_at and not require_fresh:
            logger.info(f'Serving cached {id} after fetch failure')
            return self.store.get_actor(id)
        raise UnknownActor(f"Couldn't resolve {id}: {err}")

    def record_fetch_failure(self, id, error, status=None):
        """Records a failed fetch or delivery against an actor's health.

        Args:
          id (str): actor id
          error (str): error message
          status (int): HTTP status, or None if there was no response

        Returns:
          models.Actor: updated actor
        """
        id = util.fragmentless(id)
        with self.locks(id):
            return self._record_failure(id, self.store.get_actor(id), error,
                                        status=status)

    def _record_failure(self, id, actor, error, status=None):
        now = util.now()
        gone = self.classifier.is_gone(status)
        if not actor:
            actor = Actor(id=id, username=id.rstrip('/').split('/')[-1],
                          host=normalize_host(id))

        actor.fetch_failure_count += 1
        actor.last_fetch_attempt_at = now
        actor.last_fetch_error = error
        actor.last_fetch_gone = gone
        if gone and not actor.gone_detected_at:
            actor.gone_detected_at = now

        if actor.state(ttl=self.ttl, gone_threshold=self.gone_threshold) == GONE:
            logger.warning(f'{id} is now gone after {actor.fetch_failure_count} failures: {error}')
        else:
            logger.info(f'{id} fetch failure {actor.fetch_failure_count}: {error}')

        self.store.put_actor(actor)
        return actor

    def clear_fetch_failure(self, id):
        """Operator action: resets an actor's health so it's fetched again.

        Returns the actor to :data:`models.UNKNOWN`.

        Returns:
          models.Actor or None: None if we don't have this actor
        """
        id = util.fragmentless(id)
        with self.locks(id):
            actor = self.store.get_actor(id)
            if not actor:
                return None

            logger.info(f'Clearing fetch failures for {id}')
            actor = actor.copy(fetch_failure_count=0, gone_detected_at=None,
                               last_fetch_error=None, last_fetch_gone=False,
                               fetched_at=None)
            self.store.put_actor(actor)
            return actor

    def find_with_fetch_errors(self, limit=100):
        """Returns remote actors with recorded fetch failures, for operators."""
        return self.store.find_actors_with_fetch_errors(limit=limit)


resolver = ActorResolver()
