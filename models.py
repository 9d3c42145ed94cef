"""Datastore-agnostic domain records: actors, notes, follows, etc.

These are what the federation core reads and writes through the
:class:`storage.Storage` repositories. :mod:`datastore` maps them to and from
Google Cloud Datastore entities.
"""
from dataclasses import dataclass, field, fields, replace
from datetime import datetime
import logging
import random
from typing import Optional
import uuid

from Crypto.PublicKey import RSA
from oauth_dropins.webutil import util
from oauth_dropins.webutil.appengine_info import DEBUG

import common
from common import base64_to_long, long_to_base64

logger = logging.getLogger(__name__)

KEY_BITS = 1024 if DEBUG else 2048

# Actor resolution states
UNKNOWN = 'unknown'
FETCHING = 'fetching'
FRESH = 'fresh'
STALE = 'stale'
SOFT_ERROR = 'soft-error'
GONE = 'gone'

FOLLOW_STATUSES = ('pending', 'accepted')
VISIBILITIES = ('public', 'home', 'followers', 'specified')
NOTIFICATION_TYPES = (
    'follow',
    'follow_request',
    'mention',
    'reaction',
    'renote',
    'reply',
)


def new_id():
    return uuid.uuid4().hex


class Record:
    """Mixin for the dataclasses below."""

    @classmethod
    def field_names(cls):
        return [f.name for f in fields(cls)]

    def to_dict(self):
        return {name: getattr(self, name) for name in self.field_names()}

    @classmethod
    def from_dict(cls, data):
        names = set(cls.field_names())
        return cls(**{k: v for k, v in data.items() if k in names})

    def copy(self, **changes):
        return replace(self, **changes)


@dataclass
class Actor(Record):
    """A local or remote identity.

    ``id`` is the actor's ActivityPub id, which is always a URL. ``host`` is
    None for local actors.

    The ``fetch_*`` and ``gone_detected_at`` fields track the health of remote
    actors. ``fetched_at`` is the last successful fetch.
    """
    id: str
    username: str
    host: Optional[str] = None
    inbox: Optional[str] = None
    shared_inbox: Optional[str] = None
    public_key_pem: Optional[str] = None
    # local actors only
    mod: Optional[str] = None
    public_exponent: Optional[str] = None
    private_exponent: Optional[str] = None

    name: Optional[str] = None
    summary: Optional[str] = None
    type: str = 'Person'
    also_known_as: list = field(default_factory=list)
    moved_to: Optional[str] = None
    moved_at: Optional[datetime] = None
    manually_approves_followers: bool = False
    deleted: bool = False

    # remote health
    fetched_at: Optional[datetime] = None
    gone_detected_at: Optional[datetime] = None
    fetch_failure_count: int = 0
    last_fetch_attempt_at: Optional[datetime] = None
    last_fetch_error: Optional[str] = None
    last_fetch_gone: bool = False

    created: datetime = field(default_factory=lambda: util.now())

    @property
    def is_local(self):
        return self.host is None

    @property
    def handle(self):
        return f'@{self.username}@{self.host or common.LOCAL_DOMAIN}'

    @property
    def key_id(self):
        return f'{self.id}#main-key'

    @classmethod
    def new_local(cls, username, id=None, **kwargs):
        """Creates a new local actor with a fresh RSA keypair. Doesn't store it.

        Args:
          username (str)
          id (str): optional, defaults to ``https://[LOCAL_DOMAIN]/users/[username]``
          kwargs: passed through to the constructor

        Returns:
          Actor:
        """
        # this uses urandom(), and does nontrivial math, so it can take a
        # while depending on the amount of randomness available.
        key = RSA.generate(KEY_BITS, randfunc=random.randbytes if DEBUG else None)
        id = id or common.host_url(f'users/{username}')
        actor = cls(id=id, username=username, inbox=f'{id}/inbox',
                    shared_inbox=common.host_url('inbox'),
                    mod=long_to_base64(key.n).decode(),
                    public_exponent=long_to_base64(key.e).decode(),
                    private_exponent=long_to_base64(key.d).decode(),
                    **kwargs)
        actor.public_key_pem = actor.public_pem().decode()
        return actor

    def public_pem(self):
        """
        Returns:
          bytes:
        """
        if not self.mod:
            return self.public_key_pem.encode() if self.public_key_pem else None

        rsa = RSA.construct((base64_to_long(str(self.mod)),
                             base64_to_long(str(self.public_exponent))))
        return rsa.exportKey(format='PEM')

    def private_pem(self):
        """
        Returns:
          bytes:
        """
        assert self.mod and self.public_exponent and self.private_exponent, str(self)
        rsa = RSA.construct((base64_to_long(str(self.mod)),
                             base64_to_long(str(self.public_exponent)),
                             base64_to_long(str(self.private_exponent))))
        return rsa.exportKey(format='PEM')

    def state(self, now=None, ttl=None, gone_threshold=None):
        """Returns this actor's resolution state.

        Local actors are always :data:`FRESH`. :data:`FETCHING` is transient and
        tracked by :class:`actors.ActorResolver`, not stored.

        Args:
          now (datetime): defaults to :func:`util.now`
          ttl (timedelta): defaults to :attr:`common.ACTOR_TTL`
          gone_threshold (int): defaults to :attr:`common.ACTOR_GONE_THRESHOLD`

        Returns:
          str: :data:`UNKNOWN`, :data:`FRESH`, :data:`STALE`,
          :data:`SOFT_ERROR`, or :data:`GONE`
        """
        if self.is_local:
            return FRESH

        if gone_threshold is None:
            gone_threshold = common.ACTOR_GONE_THRESHOLD

        if (self.fetch_failure_count >= gone_threshold and self.last_fetch_gone):
            return GONE
        elif self.fetch_failure_count:
            return SOFT_ERROR
        elif not self.fetched_at:
            return UNKNOWN

        now = now or util.now()
        ttl = ttl or common.ACTOR_TTL
        return FRESH if now - self.fetched_at < ttl else STALE


@dataclass
class Note(Record):
    """A post. ``uri`` is the ActivityPub id for remote notes."""
    id: str
    author_id: str
    uri: Optional[str] = None
    text: Optional[str] = None
    cw: Optional[str] = None
    visibility: str = 'public'
    reply_id: Optional[str] = None
    reply_uri: Optional[str] = None
    renote_id: Optional[str] = None
    quote_id: Optional[str] = None
    mentions: list = field(default_factory=list)
    tags: list = field(default_factory=list)
    deleted: bool = False
    local: bool = False
    created: datetime = field(default_factory=lambda: util.now())
    updated: Optional[datetime] = None


@dataclass
class Follow(Record):
    """A follow edge from ``follower_id`` to ``followee_id``.

    ``activity_id`` is the id of the Follow activity that created it, if any.
    """
    id: str
    follower_id: str
    followee_id: str
    status: str = 'accepted'
    activity_id: Optional[str] = None
    created: datetime = field(default_factory=lambda: util.now())


@dataclass
class Reaction(Record):
    id: str
    actor_id: str
    note_id: str
    reaction: str = '❤️'
    custom_emoji_url: Optional[str] = None
    activity_id: Optional[str] = None
    created: datetime = field(default_factory=lambda: util.now())


@dataclass
class Notification(Record):
    id: str
    type: str
    notifiee_id: str
    notifier_id: str
    note_id: Optional[str] = None
    reaction: Optional[str] = None
    created: datetime = field(default_factory=lambda: util.now())


@dataclass
class ReceivedActivity(Record):
    """Dedupe record for an inbound activity id.

    ``status`` is ``leased`` while a request is handling it, then ``done``.
    Leased records expire at ``leased_until`` so that a crashed request
    doesn't block retries forever. The holder renews the lease while its
    handler runs.
    """
    activity_id: str
    status: str = 'leased'
    received_at: datetime = field(default_factory=lambda: util.now())
    leased_until: Optional[datetime] = None
    # identifies the claim that holds the lease
    token: Optional[str] = None


@dataclass
class RemoteInstance(Record):
    """Cached NodeInfo metadata for a remote server, keyed by host."""
    host: str
    software_name: Optional[str] = None
    software_version: Optional[str] = None
    name: Optional[str] = None
    description: Optional[str] = None
    open_registrations: Optional[bool] = None
    users_count: Optional[int] = None
    notes_count: Optional[int] = None
    last_fetched_at: Optional[datetime] = None
    last_fetch_attempt_at: Optional[datetime] = None
    fetch_error_count: int = 0
    last_fetch_error: Optional[str] = None

    def is_stale(self, now=None, ttl=None):
        if not self.last_fetched_at:
            return True
        return ((now or util.now()) - self.last_fetched_at
                >= (ttl or common.INSTANCE_TTL))


@dataclass
class InstanceBlock(Record):
    """A moderator's block of a remote host. ``host`` is lower case."""
    host: str
    reason: Optional[str] = None
    blocked_by: Optional[str] = None
    created: datetime = field(default_factory=lambda: util.now())
