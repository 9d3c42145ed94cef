"""Google Cloud Datastore storage, via ndb.

Each entity class mirrors the :mod:`models` record with the same field names,
so conversion is just ``to_dict()`` in both directions.
"""
from datetime import timezone
import functools
import logging

from google.cloud import ndb

import models
from storage import Storage

logger = logging.getLogger(__name__)

UTC = timezone.utc


class Entity(ndb.Model):
    """Base class. Subclasses set ``RECORD`` and ``KEY_FIELD``."""
    RECORD = None
    KEY_FIELD = 'id'

    @classmethod
    def _get_kind(cls):
        return cls.RECORD.__name__ if cls.RECORD else cls.__name__

    def _post_put_hook(self, future):
        logger.debug(f'Wrote {self.key}')

    @classmethod
    def from_record(cls, record):
        data = record.to_dict()
        key = data.pop(cls.KEY_FIELD)
        data = {k: v for k, v in data.items() if k in cls._properties}
        return cls(id=key, **data)

    def to_record(self):
        data = self.to_dict()
        data[self.KEY_FIELD] = self.key.id()
        return self.RECORD.from_dict(data)


def _record(entity):
    return entity.to_record() if entity else None


class ActorEntity(Entity):
    RECORD = models.Actor

    username = ndb.StringProperty(required=True)
    host = ndb.StringProperty()
    inbox = ndb.StringProperty()
    shared_inbox = ndb.StringProperty()
    public_key_pem = ndb.TextProperty()
    mod = ndb.StringProperty()
    public_exponent = ndb.StringProperty()
    private_exponent = ndb.StringProperty()
    name = ndb.StringProperty()
    summary = ndb.TextProperty()
    type = ndb.StringProperty()
    also_known_as = ndb.StringProperty(repeated=True)
    moved_to = ndb.StringProperty()
    moved_at = ndb.DateTimeProperty(tzinfo=UTC)
    manually_approves_followers = ndb.BooleanProperty(default=False)
    deleted = ndb.BooleanProperty(default=False)
    fetched_at = ndb.DateTimeProperty(tzinfo=UTC)
    gone_detected_at = ndb.DateTimeProperty(tzinfo=UTC)
    fetch_failure_count = ndb.IntegerProperty(default=0)
    last_fetch_attempt_at = ndb.DateTimeProperty(tzinfo=UTC)
    last_fetch_error = ndb.TextProperty()
    last_fetch_gone = ndb.BooleanProperty(default=False)
    created = ndb.DateTimeProperty(tzinfo=UTC)


class NoteEntity(Entity):
    RECORD = models.Note

    author_id = ndb.StringProperty(required=True)
    uri = ndb.StringProperty()
    text = ndb.TextProperty()
    cw = ndb.TextProperty()
    visibility = ndb.StringProperty(choices=models.VISIBILITIES)
    reply_id = ndb.StringProperty()
    reply_uri = ndb.StringProperty()
    renote_id = ndb.StringProperty()
    quote_id = ndb.StringProperty()
    mentions = ndb.StringProperty(repeated=True)
    tags = ndb.StringProperty(repeated=True)
    deleted = ndb.BooleanProperty(default=False)
    local = ndb.BooleanProperty(default=False)
    created = ndb.DateTimeProperty(tzinfo=UTC)
    updated = ndb.DateTimeProperty(tzinfo=UTC)


class FollowEntity(Entity):
    RECORD = models.Follow

    follower_id = ndb.StringProperty(required=True)
    followee_id = ndb.StringProperty(required=True)
    status = ndb.StringProperty(choices=models.FOLLOW_STATUSES)
    activity_id = ndb.StringProperty()
    created = ndb.DateTimeProperty(tzinfo=UTC)


class ReactionEntity(Entity):
    RECORD = models.Reaction

    actor_id = ndb.StringProperty(required=True)
    note_id = ndb.StringProperty(required=True)
    reaction = ndb.StringProperty()
    custom_emoji_url = ndb.StringProperty()
    activity_id = ndb.StringProperty()
    created = ndb.DateTimeProperty(tzinfo=UTC)


class NotificationEntity(Entity):
    RECORD = models.Notification

    type = ndb.StringProperty(choices=models.NOTIFICATION_TYPES)
    notifiee_id = ndb.StringProperty(required=True)
    notifier_id = ndb.StringProperty()
    note_id = ndb.StringProperty()
    reaction = ndb.StringProperty()
    created = ndb.DateTimeProperty(tzinfo=UTC)


class ReceivedActivityEntity(Entity):
    RECORD = models.ReceivedActivity
    KEY_FIELD = 'activity_id'

    status = ndb.StringProperty(choices=('leased', 'done'))
    received_at = ndb.DateTimeProperty(tzinfo=UTC)
    leased_until = ndb.DateTimeProperty(tzinfo=UTC)
    token = ndb.StringProperty()


class RemoteInstanceEntity(Entity):
    RECORD = models.RemoteInstance
    KEY_FIELD = 'host'

    software_name = ndb.StringProperty()
    software_version = ndb.StringProperty()
    name = ndb.StringProperty()
    description = ndb.TextProperty()
    open_registrations = ndb.BooleanProperty()
    users_count = ndb.IntegerProperty()
    notes_count = ndb.IntegerProperty()
    last_fetched_at = ndb.DateTimeProperty(tzinfo=UTC)
    last_fetch_attempt_at = ndb.DateTimeProperty(tzinfo=UTC)
    fetch_error_count = ndb.IntegerProperty(default=0)
    last_fetch_error = ndb.TextProperty()


class InstanceBlockEntity(Entity):
    RECORD = models.InstanceBlock
    KEY_FIELD = 'host'

    reason = ndb.TextProperty()
    blocked_by = ndb.StringProperty()
    created = ndb.DateTimeProperty(tzinfo=UTC)


def in_context(fn):
    """Decorator that runs a :class:`NdbStorage` method inside an ndb context.

    Reuses the current context if there is one, eg in a Flask request wrapped
    by :func:`oauth_dropins.webutil.flask_util.ndb_context_middleware`.
    """
    @functools.wraps(fn)
    def wrapped(self, *args, **kwargs):
        if ndb.get_context(raise_context_error=False):
            return fn(self, *args, **kwargs)
        with self.client.context():
            return fn(self, *args, **kwargs)

    return wrapped


class NdbStorage(Storage):
    """Stores records in Google Cloud Datastore.

    Args:
      client (google.cloud.ndb.Client): optional, defaults to
        :attr:`oauth_dropins.webutil.appengine_config.ndb_client`
    """
    def __init__(self, client=None):
        self._client = client

    @property
    def client(self):
        if self._client is None:
            from oauth_dropins.webutil.appengine_config import ndb_client
            self._client = ndb_client
        return self._client

    # actors
    @in_context
    def get_actor(self, id):
        return _record(ActorEntity.get_by_id(id))

    @in_context
    def find_actor(self, username, host=None):
        return _record(ActorEntity.query(ActorEntity.username == username,
                                         ActorEntity.host == host).get())

    @in_context
    def put_actor(self, actor):
        ActorEntity.from_record(actor).put()
        return actor

    @in_context
    def find_actors_with_fetch_errors(self, limit=100):
        query = ActorEntity.query(ActorEntity.fetch_failure_count > 0)
        return [e.to_record() for e in query.fetch(limit)]

    # notes
    @in_context
    def get_note(self, id):
        return _record(NoteEntity.get_by_id(id))

    @in_context
    def find_note_by_uri(self, uri):
        if not uri:
            return None
        return _record(NoteEntity.query(NoteEntity.uri == uri).get())

    @in_context
    def put_note(self, note):
        NoteEntity.from_record(note).put()
        return note

    # follows
    @in_context
    def get_follow(self, follower_id, followee_id):
        return _record(FollowEntity.query(FollowEntity.follower_id == follower_id,
                                          FollowEntity.followee_id == followee_id,
                                          ).get())

    @in_context
    def find_follow_by_activity(self, activity_id):
        if not activity_id:
            return None
        return _record(FollowEntity.query(
            FollowEntity.activity_id == activity_id).get())

    @in_context
    def find_follows(self, *, follower_id=None, followee_id=None):
        query = FollowEntity.query()
        if follower_id is not None:
            query = query.filter(FollowEntity.follower_id == follower_id)
        if followee_id is not None:
            query = query.filter(FollowEntity.followee_id == followee_id)
        return [e.to_record() for e in query]

    @in_context
    def get_or_create_follow(self, follower_id, followee_id, **kwargs):
        if existing := self.get_follow(follower_id, followee_id):
            return existing, False

        # Datastore transactions can only do key lookups, not queries
        id = f'{follower_id} {followee_id}'

        @ndb.transactional()
        def get_or_create():
            if existing := FollowEntity.get_by_id(id):
                return existing.to_record(), False
            follow = models.Follow(id=id, follower_id=follower_id,
                                   followee_id=followee_id, **kwargs)
            FollowEntity.from_record(follow).put()
            return follow, True

        return get_or_create()

    @in_context
    def put_follow(self, follow):
        FollowEntity.from_record(follow).put()
        return follow

    @in_context
    def delete_follow(self, id):
        ndb.Key(FollowEntity, id).delete()

    # reactions
    @in_context
    def find_reaction(self, actor_id, note_id, reaction=None):
        query = ReactionEntity.query(ReactionEntity.actor_id == actor_id,
                                     ReactionEntity.note_id == note_id)
        if reaction is not None:
            query = query.filter(ReactionEntity.reaction == reaction)
        return _record(query.get())

    @in_context
    def find_reaction_by_activity(self, activity_id):
        if not activity_id:
            return None
        return _record(ReactionEntity.query(
            ReactionEntity.activity_id == activity_id).get())

    @in_context
    def put_reaction(self, reaction):
        ReactionEntity.from_record(reaction).put()
        return reaction

    @in_context
    def delete_reaction(self, id):
        ndb.Key(ReactionEntity, id).delete()

    # notifications
    @in_context
    def put_notification(self, notification):
        NotificationEntity.from_record(notification).put()
        return notification

    @in_context
    def find_notifications(self, notifiee_id):
        return [e.to_record() for e in NotificationEntity.query(
            NotificationEntity.notifiee_id == notifiee_id)]

    # received activities
    @in_context
    def get_received_activity(self, activity_id):
        return _record(ReceivedActivityEntity.get_by_id(activity_id))

    @in_context
    def claim_received_activity(self, activity_id, now, lease, token=None):
        @ndb.transactional()
        def claim():
            existing = ReceivedActivityEntity.get_by_id(activity_id)
            if existing and (existing.status == 'done'
                             or (existing.leased_until
                                 and existing.leased_until > now)):
                return False
            ReceivedActivityEntity(id=activity_id, status='leased',
                                   received_at=now, leased_until=now + lease,
                                   token=token).put()
            return True

        return claim()

    @in_context
    def renew_received_activity(self, activity_id, token, now, lease):
        @ndb.transactional()
        def renew():
            existing = ReceivedActivityEntity.get_by_id(activity_id)
            if (not existing or existing.status != 'leased'
                    or existing.token != token):
                return False
            existing.leased_until = now + lease
            existing.put()
            return True

        return renew()

    @in_context
    def put_received_activity(self, received):
        ReceivedActivityEntity.from_record(received).put()
        return received

    @in_context
    def delete_received_activity(self, activity_id):
        ndb.Key(ReceivedActivityEntity, activity_id).delete()

    @in_context
    def delete_received_activities_before(self, cutoff):
        keys = [e.key for e in ReceivedActivityEntity.query(
                    ReceivedActivityEntity.received_at < cutoff)
                if e.status == 'done']
        ndb.delete_multi(keys)
        return len(keys)

    # remote instances
    @in_context
    def get_remote_instance(self, host):
        return _record(RemoteInstanceEntity.get_by_id(host))

    @in_context
    def get_remote_instances(self, hosts):
        hosts = list(hosts)
        entities = ndb.get_multi(ndb.Key(RemoteInstanceEntity, host)
                                 for host in hosts)
        return {host: e.to_record() for host, e in zip(hosts, entities) if e}

    @in_context
    def put_remote_instance(self, instance):
        RemoteInstanceEntity.from_record(instance).put()
        return instance

    @in_context
    def find_stale_remote_instances(self, cutoff, max_errors, limit=20):
        query = RemoteInstanceEntity.query(
            RemoteInstanceEntity.last_fetched_at < cutoff,
        ).order(RemoteInstanceEntity.last_fetched_at)

        stale = []
        for entity in query:
            if entity.fetch_error_count < max_errors:
                stale.append(entity.to_record())
                if len(stale) >= limit:
                    break
        return stale

    # instance blocks
    @in_context
    def get_instance_block(self, host):
        return _record(InstanceBlockEntity.get_by_id(host))

    @in_context
    def put_instance_block(self, block):
        InstanceBlockEntity.from_record(block).put()
        return block

    @in_context
    def delete_instance_block(self, host):
        ndb.Key(InstanceBlockEntity, host).delete()

    @in_context
    def find_instance_blocks(self):
        return [e.to_record() for e in InstanceBlockEntity.query()]

    @in_context
    def clear(self):
        for cls in (ActorEntity, NoteEntity, FollowEntity, ReactionEntity,
                    NotificationEntity, ReceivedActivityEntity,
                    RemoteInstanceEntity, InstanceBlockEntity):
            ndb.delete_multi(cls.query().fetch(keys_only=True))
