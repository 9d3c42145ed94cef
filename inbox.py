"""Inbox dispatcher: verifies, dedupes, and routes inbound activities.

Pipeline for each delivery, all synchronous within the HTTP request so that the
response tells the sender whether to retry:

#. parse the body
#. check the signing key's host against the blocklist
#. resolve the signer and verify the HTTP Signature
#. authorize the signer against the activity's actor and id
#. check the actor's host against the blocklist
#. skip if the Received-Activity ledger has seen this id
#. claim the id in the ledger
#. run the verb's handler, renewing the claim's lease while it runs. Mark seen
   on success, release the claim on failure.
"""
from dataclasses import dataclass, field
import logging

from flask import request
from granary import as1
from oauth_dropins.webutil import util
from oauth_dropins.webutil.util import json_loads
from werkzeug.exceptions import BadRequest, NotFound

from common import (
    ActivityInProgress,
    BlockedInstance,
    SignatureInvalid,
    UnknownActor,
)
from domains import guard as default_guard, normalize_host
from flask_app import app
import handlers
from ledger import ledger as default_ledger
from models import GONE
import signature
from storage import storage as default_storage

logger = logging.getLogger(__name__)


@dataclass
class Envelope:
    """One inbound HTTP delivery."""
    method: str
    path: str
    headers: dict
    body: bytes
    # parsed activity, populated by the dispatcher
    activity: dict = field(default=None, repr=False)


class Dispatcher:
    """
    Args:
      store (storage.Storage): optional, defaults to :data:`storage.storage`
      resolver (actors.ActorResolver): optional
      guard (domains.BlockGuard): optional
      ledger (ledger.Ledger): optional
      delivery (delivery.DeliveryEngine): optional, passed to handlers
      registry (dict): maps verb to :class:`handlers.Handler` subclass. Defaults
        to :data:`handlers.HANDLERS`.
    """
    def __init__(self, store=None, resolver=None, guard=None, ledger=None,
                 delivery=None, registry=None):
        self.store = store or default_storage
        self._resolver = resolver
        self.guard = guard or default_guard
        self.ledger = ledger or default_ledger
        self._delivery = delivery
        self.registry = handlers.HANDLERS if registry is None else registry

    @property
    def resolver(self):
        if self._resolver is None:
            from actors import resolver
            self._resolver = resolver
        return self._resolver

    @property
    def delivery(self):
        if self._delivery is None:
            from delivery import engine
            self._delivery = engine
        return self._delivery

    def dispatch(self, envelope):
        """Handles one inbound delivery.

        Args:
          envelope (Envelope)

        Returns:
          (str, int) tuple: response body and HTTP status. 202 if handled or
          unsupported, 204 if already seen.

        Raises:
          werkzeug.exceptions.HTTPException: :class:`common.SignatureInvalid`,
            :class:`common.BlockedInstance`, :class:`common.UnknownActor`,
            :class:`common.HandlerValidationError`,
            :class:`common.ActivityInProgress`, or
            :class:`werkzeug.exceptions.BadRequest` for unparseable bodies
        """
        activity = envelope.activity = self.parse(envelope.body)
        type = activity['type']
        actor_id = util.fragmentless(as1.get_object(activity, 'actor').get('id'))

        signer = signature.signer_id(envelope.headers)
        if not signer:
            raise SignatureInvalid('No HTTP Signature')
        elif not self.guard.is_allowed(signer):
            raise BlockedInstance(f'{normalize_host(signer)} is blocked')

        actor = self.authenticate(envelope, signer)
        self.authorize(activity, actor)

        if not self.guard.is_allowed(actor.host):
            raise BlockedInstance(f'{actor.host} is blocked')

        id = activity['id']
        if self.ledger.has_seen(id):
            logger.info(f'Already seen {id}')
            return 'Already seen', 204

        token = self.ledger.claim(id)
        if not token:
            if self.ledger.has_seen(id):
                return 'Already seen', 204
            raise ActivityInProgress(f'{id} is already being handled')

        handler_cls = self.registry.get(type)
        if not handler_cls:
            logger.info(f'No handler for {type}, ignoring {id}')
            self.ledger.mark_seen(id, token)
            return f'Ignoring unsupported {type}', 202

        logger.info(f'Got {type} {id} from {actor_id}')
        handler = handler_cls(store=self.store, resolver=self.resolver,
                              delivery=self.delivery)
        try:
            with self.ledger.holding(id, token):
                result = handler.handle(activity, actor)
        except BaseException as e:
            logger.info(f'{type} handler failed on {id}: {e}')
            self.ledger.release(id, token)
            raise

        self.ledger.mark_seen(id, token)
        logger.info(f'{type} {id}: {result}')
        return result or 'OK', 202

    @staticmethod
    def parse(body):
        """Parses and minimally validates an inbound AS2 activity.

        Synthesizes an id if the activity doesn't have one.

        Raises:
          werkzeug.exceptions.BadRequest:
        """
        try:
            activity = json_loads(body)
            assert activity and isinstance(activity, dict)
        except (TypeError, ValueError, AssertionError):
            raise BadRequest(f"Couldn't parse body as non-empty JSON mapping: {body[:200]!r}")

        type = activity.get('type')
        actor_id = as1.get_object(activity, 'actor').get('id')
        if not type or not isinstance(type, str):
            raise BadRequest('Activity has no type')
        elif not actor_id or not util.is_web(actor_id):
            raise BadRequest('Activity has no actor')

        if not activity.get('id'):
            obj_id = as1.get_object(activity).get('id') or ''
            activity['id'] = f'{actor_id}#{type}-{obj_id}-{util.now().isoformat()}'

        return activity

    def authenticate(self, envelope, signer):
        """Resolves the signer and verifies the signature.

        If verification fails against a key we had cached, the signer may have
        rotated keys, so refetch it and try once more.

        Returns:
          models.Actor: the signer

        Raises:
          common.SignatureInvalid:
          common.UnknownActor:
        """
        cached = self.store.get_actor(signer)
        actor = self.resolver.resolve_id(signer)

        if not actor.public_key_pem:
            if self.resolver.state(actor) == GONE:
                raise SignatureInvalid(f'{signer} is gone')
            raise UnknownActor(f'{signer} has no public key')

        if self.verify(envelope, actor):
            return actor

        if cached and cached.fetched_at and cached.public_key_pem:
            logger.info(f'Signature failed against cached key for {signer}, refetching')
            actor = self.resolver.resolve_id(signer, require_fresh=True)
            if actor.public_key_pem and self.verify(envelope, actor):
                return actor

        raise SignatureInvalid(f'HTTP Signature from {signer} failed verification')

    @staticmethod
    def verify(envelope, actor):
        return signature.verify(envelope.method, envelope.path, envelope.headers,
                                envelope.body, actor.public_key_pem)

    @staticmethod
    def authorize(activity, actor):
        """Checks that the signer may send this activity.

        Raises:
          common.SignatureInvalid:
        """
        actor_id = util.fragmentless(as1.get_object(activity, 'actor').get('id'))
        if actor_id != actor.id:
            raise SignatureInvalid(f'Signed by {actor.id} but actor is {actor_id}')

        id_host = normalize_host(activity['id'])
        if id_host != normalize_host(actor.id):
            raise SignatureInvalid(
                f'Actor {actor.id} and activity {activity["id"]} on different hosts')


dispatcher = Dispatcher()


def envelope_from_request():
    return Envelope(method=request.method, path=request.full_path.rstrip('?'),
                    headers=dict(request.headers), body=request.get_data())


@app.post('/inbox')
def shared_inbox():
    """Handles ActivityPub shared inbox delivery."""
    return dispatcher.dispatch(envelope_from_request())


@app.post('/users/<username>/inbox')
def user_inbox(username):
    """Handles ActivityPub delivery to a local user's inbox."""
    user = dispatcher.store.find_actor(username)
    if not user or user.deleted:
        raise NotFound(f'No user {username}')

    return dispatcher.dispatch(envelope_from_request())
