"""Outbound delivery of locally originated activities.

:meth:`DeliveryEngine.deliver` resolves recipients to inboxes, collapses
recipients that share an inbox, adds one Cloud Tasks task per inbox to the
``send`` queue, and returns. :func:`send_task` handles those tasks, one POST of
one signed copy of the activity per task.

Transient failures are retried by adding the task again with exponential
backoff, up to :attr:`common.DELIVERY_MAX_ATTEMPTS` attempts. Attempts to the
same inbox are serialized within a process. Permanent failures are recorded
against the recipients' actor health. Failures are logged, never raised to the
caller.
"""
from dataclasses import dataclass, field, replace
import logging

from flask import request
from oauth_dropins.webutil.flask_util import cloud_tasks_only
from oauth_dropins.webutil.util import json_loads
import requests

import activitypub
import common
from common import DeliveryPermanentError, DeliveryTransportError, UnknownActor
from domains import guard as default_guard, normalize_host
from models import Actor, GONE
from storage import storage as default_storage

logger = logging.getLogger(__name__)

QUEUE = 'send'

SENT = 'sent'
BLOCKED = 'blocked'
FAILED = 'failed'
RETRYING = 'retrying'
GAVE_UP = 'gave up'


@dataclass
class Delivery:
    """One activity to one destination inbox."""
    inbox: str
    activity: dict
    from_actor: Actor
    recipient_ids: list = field(default_factory=list)
    # whether inbox is a shared inbox, ie may serve many actors
    shared: bool = False
    # 1-based
    attempt: int = 1

    @property
    def host(self):
        return normalize_host(self.inbox)

    def next_attempt(self):
        return replace(self, attempt=self.attempt + 1)

    def task_params(self):
        """Returns this delivery as ``send`` task parameters."""
        return {
            'inbox': self.inbox,
            'activity': self.activity,
            'from_actor': self.from_actor.id,
            'recipients': ' '.join(self.recipient_ids),
            'shared': 'true' if self.shared else '',
            'attempt': self.attempt,
        }


class DeliveryEngine:
    """
    Args:
      store (storage.Storage): optional, defaults to :data:`storage.storage`
      resolver (actors.ActorResolver): optional, defaults to
        :data:`actors.resolver`
      guard (domains.BlockGuard): optional
      classifier (common.FailureClassifier): optional
      max_attempts (int): per destination
      backoff_base (datetime.timedelta): delay before the first retry. Doubles
        after each attempt.
    """
    def __init__(self, store=None, resolver=None, guard=None, classifier=None,
                 max_attempts=common.DELIVERY_MAX_ATTEMPTS,
                 backoff_base=common.DELIVERY_BACKOFF_BASE):
        self.store = store or default_storage
        self._resolver = resolver
        self.guard = guard or default_guard
        self.classifier = classifier or common.classifier
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.destination_locks = common.KeyedLocks()

    @property
    def resolver(self):
        if self._resolver is None:
            from actors import resolver
            self._resolver = resolver
        return self._resolver

    def deliver(self, activity, recipients, from_actor):
        """Enqueues an activity for delivery. Doesn't block on sending.

        Args:
          activity (dict): AS2 activity
          recipients (sequence of models.Actor or str): actors, actor ids, or
            handles
          from_actor (models.Actor): local actor to sign as

        Returns:
          list of Delivery: one per destination inbox
        """
        assert from_actor and from_actor.is_local, from_actor
        recipients = list(recipients)
        logger.info(f'Delivering {activity.get("type")} {activity.get("id")} from {from_actor.id} to {len(recipients)} recipients')

        deliveries = self.plan(activity, recipients, from_actor)
        for delivery in deliveries:
            self.enqueue(delivery)
        return deliveries

    def deliver_to_followers(self, activity, from_actor):
        """Delivers an activity to all of a local actor's remote followers."""
        follower_ids = [f.follower_id for f in
                        self.store.find_follows(followee_id=from_actor.id)
                        if f.status == 'accepted']
        remote = [id for id in follower_ids
                  if normalize_host(id) != common.LOCAL_DOMAIN]
        return self.deliver(activity, remote, from_actor)

    def plan(self, activity, recipients, from_actor):
        """Resolves recipients and groups them into one delivery per inbox.

        Recipients with a shared inbox are collapsed into a single delivery to
        that shared inbox.

        Returns:
          list of Delivery:
        """
        deliveries = {}  # maps inbox URL to Delivery

        for recipient in recipients:
            try:
                actor = (recipient if isinstance(recipient, Actor)
                         else self.resolver.resolve(recipient))
            except UnknownActor as e:
                logger.warning(f"Couldn't resolve recipient {recipient}: {e}")
                continue

            if actor.is_local:
                continue
            elif actor.deleted:
                logger.info(f'Skipping deleted recipient {actor.id}')
                continue
            elif self.resolver.state(actor) == GONE:
                logger.info(f'Skipping gone recipient {actor.id}')
                continue

            inbox = actor.shared_inbox or actor.inbox
            if not inbox:
                logger.info(f'{actor.id} has no inbox')
                continue

            if inbox not in deliveries:
                deliveries[inbox] = Delivery(inbox=inbox, activity=activity,
                                             from_actor=from_actor,
                                             shared=bool(actor.shared_inbox))
            deliveries[inbox].recipient_ids.append(actor.id)

        return list(deliveries.values())

    def enqueue(self, delivery, delay=None):
        """Adds a ``send`` task for one delivery attempt.

        Args:
          delivery (Delivery)
          delay (datetime.timedelta): optional
        """
        return common.create_task(queue=QUEUE, delay=delay, **delivery.task_params())

    def from_task_params(self, params):
        """Loads a :class:`Delivery` from ``send`` task parameters.

        Raises:
          ValueError: if the parameters are missing or malformed, or the sender
            isn't a stored local actor
        """
        inbox = params.get('inbox')
        if not inbox:
            raise ValueError('Missing inbox')

        activity = json_loads(params.get('activity') or '')
        if not isinstance(activity, dict):
            raise ValueError(f'activity is {type(activity).__name__}, not object')

        from_id = params.get('from_actor')
        from_actor = self.store.get_actor(from_id) if from_id else None
        if not from_actor or not from_actor.is_local:
            raise ValueError(f'{from_id} is not a local actor')

        return Delivery(inbox=inbox, activity=activity, from_actor=from_actor,
                        recipient_ids=(params.get('recipients') or '').split(),
                        shared=bool(params.get('shared')),
                        attempt=int(params.get('attempt') or 1))

    def send(self, delivery):
        """Makes one attempt to send a delivery.

        On a transient failure, enqueues the next attempt with exponential
        backoff, or gives up after :attr:`max_attempts`. Attempts to one inbox
        never overlap within this process.

        Returns:
          str: :data:`SENT`, :data:`BLOCKED`, :data:`FAILED`,
          :data:`RETRYING`, or :data:`GAVE_UP`
        """
        with self.destination_locks(delivery.inbox):
            outcome = self._attempt(delivery)

        if outcome == RETRYING:
            delay = self.backoff_base * 2 ** (delivery.attempt - 1)
            logger.info(f'Retrying {delivery.inbox} in {delay}')
            self.enqueue(delivery.next_attempt(), delay=delay)

        return outcome

    def _attempt(self, delivery):
        if not self.guard.is_allowed(delivery.host):
            logger.info(f'Skipping sending to blocked {delivery.inbox}')
            return BLOCKED

        try:
            self._post(delivery)
        except DeliveryPermanentError as e:
            logger.warning(f'Permanent failure delivering to {delivery.inbox}: {e}')
            self._record_failure(delivery, e)
            return FAILED
        except DeliveryTransportError as e:
            if delivery.attempt >= self.max_attempts:
                logger.warning(f'Giving up on {delivery.inbox} after {delivery.attempt} attempts: {e}')
                return GAVE_UP
            logger.info(f'Attempt {delivery.attempt} to {delivery.inbox} failed: {e}')
            return RETRYING

        logger.info(f'Delivered {delivery.activity.get("id")} to {delivery.inbox}')
        return SENT

    def _record_failure(self, delivery, error):
        # a shared inbox's status describes the inbox, not any one recipient,
        # so it never marks them gone
        status = None if delivery.shared else error.status
        for id in delivery.recipient_ids:
            self.resolver.record_fetch_failure(id, str(error), status=status)

    def _post(self, delivery):
        try:
            resp = activitypub.signed_post(delivery.inbox, data=delivery.activity,
                                           from_actor=delivery.from_actor)
        except (requests.RequestException, OSError) as e:
            raise DeliveryTransportError(str(e))

        if resp.ok:
            return

        msg = f'{delivery.inbox} returned HTTP {resp.status_code}'
        kind = self.classifier.classify(resp.status_code)
        if kind == common.FailureClassifier.TRANSIENT:
            raise DeliveryTransportError(msg, status=resp.status_code)
        raise DeliveryPermanentError(msg, status=resp.status_code,
                                     gone=kind == common.FailureClassifier.GONE)


engine = DeliveryEngine()


@cloud_tasks_only(log=None)
def send_task():
    """Task handler that makes one attempt to send an activity to one inbox.

    Always returns 2xx, since retries are enqueued explicitly.

    Parameters:
      inbox (str): destination inbox URL
      activity (str): JSON AS2 activity
      from_actor (str): id of the local actor to sign as
      recipients (str): space-separated ids of the recipients behind ``inbox``
      shared (str): non-empty if ``inbox`` is a shared inbox
      attempt (int): 1-based attempt number
    """
    try:
        delivery = engine.from_task_params(request.form.to_dict())
    except ValueError as e:
        common.report_error(f'Dropping bad send task: {e}')
        return '', 204

    logger.info(f'Sending {delivery.activity.get("type")} {delivery.activity.get("id")} to {delivery.inbox}, attempt {delivery.attempt}')
    return engine.send(delivery), 200
