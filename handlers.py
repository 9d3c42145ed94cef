"""Activity handlers, one per verb.

Each handler class is registered by verb with :func:`register`. The inbox
dispatcher looks handlers up in :data:`HANDLERS` and calls
:meth:`Handler.handle` with an activity whose signature, sender, and ledger
claim have already been checked.

Handlers only read and write through :class:`storage.Storage` and send
activities through :class:`delivery.DeliveryEngine`. They're idempotent: a
redelivered activity whose effect already exists is a success, not an error.
They raise :class:`common.HandlerValidationError` when an activity can't be
applied, eg because the object it refers to doesn't exist (yet).
"""
import logging
import re

from granary import as1
from granary.source import html_to_text
from oauth_dropins.webutil import util

import activitypub
from activitypub import ACTOR_TYPES, FetchError, NOTE_TYPES
import common
from common import HandlerValidationError
from domains import normalize_host
from models import new_id, Note, Notification, Reaction
from storage import storage as default_storage

logger = logging.getLogger(__name__)

# maps verb, eg 'Follow', to Handler subclass
HANDLERS = {}

DEFAULT_REACTION = '❤️'
CUSTOM_EMOJI_RE = re.compile(r'^:([^:]+):$')
QUOTE_FIELDS = ('quoteUrl', 'quoteUri', '_misskey_quote')


def register(cls):
    """Class decorator that registers a :class:`Handler` for its ``VERB``."""
    assert cls.VERB and cls.VERB not in HANDLERS, cls.VERB
    HANDLERS[cls.VERB] = cls
    return cls


def extract_reaction(like):
    """Extracts a reaction from a ``Like``, including Misskey custom emoji.

    https://misskey-hub.net/en/docs/for-developers/api/ap-extensions/

    Args:
      like (dict): AS2 Like activity

    Returns:
      (str, str or None) tuple: reaction, custom emoji image URL
    """
    reaction = like.get('_misskey_reaction') or like.get('content')
    if not reaction or not isinstance(reaction, str):
        return DEFAULT_REACTION, None

    if match := CUSTOM_EMOJI_RE.match(reaction):
        names = (reaction, f':{match.group(1)}:', match.group(1))
        for tag in util.get_list(like, 'tag'):
            if (isinstance(tag, dict) and tag.get('type') == 'Emoji'
                    and tag.get('name') in names):
                if url := as1.get_object(tag, 'icon').get('url'):
                    return reaction, url

    return reaction, None


def visibility(obj, author):
    """Derives a note's visibility from its ``to`` and ``cc`` audiences.

    Args:
      obj (dict): AS2 object
      author (models.Actor)

    Returns:
      str: one of :data:`models.VISIBILITIES`
    """
    to = as1.get_ids(obj, 'to')
    cc = as1.get_ids(obj, 'cc')

    if any(addr in common.PUBLIC_AUDIENCES for addr in to):
        return 'public'
    elif any(addr in common.PUBLIC_AUDIENCES for addr in cc):
        return 'home'

    followers = f'{author.id.rstrip("/")}/followers'
    if any(addr == followers or addr.endswith('/followers') for addr in to + cc):
        return 'followers'

    return 'specified'


def note_fields(obj):
    """Returns the mutable :class:`models.Note` fields from an AS2 note."""
    return {
        'text': html_to_text(obj.get('content')).strip() or None,
        'cw': obj.get('summary') or None,
        'tags': [tag['name'].lstrip('#').lower()
                 for tag in util.get_list(obj, 'tag')
                 if isinstance(tag, dict) and tag.get('type') == 'Hashtag'
                 and tag.get('name')],
    }


class Handler:
    """Base class for activity handlers.

    Args:
      store (storage.Storage): optional, defaults to :data:`storage.storage`
      resolver (actors.ActorResolver): optional
      delivery (delivery.DeliveryEngine): optional
    """
    VERB = None

    def __init__(self, store=None, resolver=None, delivery=None):
        self.store = store or default_storage
        if resolver is None:
            from actors import resolver
        if delivery is None:
            from delivery import engine as delivery
        self.resolver = resolver
        self.delivery = delivery

    def handle(self, activity, actor):
        """Applies an activity.

        Args:
          activity (dict): AS2 activity
          actor (models.Actor): sender, already verified

        Returns:
          str: human-readable result

        Raises:
          common.HandlerValidationError:
        """
        raise NotImplementedError()

    @staticmethod
    def object_id(activity):
        id = as1.get_object(activity).get('id')
        if not id or not isinstance(id, str):
            raise HandlerValidationError(f'{activity.get("type")} has no object id')
        return id

    def local_actor(self, id):
        actor = self.store.get_actor(util.fragmentless(id)) if id else None
        return actor if actor and actor.is_local and not actor.deleted else None

    def find_note(self, uri_or_id):
        return (self.store.find_note_by_uri(uri_or_id)
                or self.store.get_note(uri_or_id))

    def fetch_object(self, id):
        try:
            return activitypub.fetch(id)
        except FetchError as e:
            raise HandlerValidationError(f"Couldn't fetch {id}: {e}")

    def notify(self, type, notifiee_id, notifier_id, note_id=None, reaction=None):
        """Creates a notification for a local actor. No-op for remote actors."""
        notifiee = self.local_actor(notifiee_id)
        if not notifiee or notifiee_id == notifier_id:
            return None

        notification = Notification(id=new_id(), type=type, notifiee_id=notifiee_id,
                                    notifier_id=notifier_id, note_id=note_id,
                                    reaction=reaction)
        logger.info(f'Notifying {notifiee_id} of {type} by {notifier_id}')
        return self.store.put_notification(notification)

    def save_note(self, obj, author):
        """Stores a remote AS2 note object as a :class:`models.Note`.

        Resolves its reply and quote targets against notes we already have.

        Returns:
          models.Note:
        """
        reply_uri = as1.get_object(obj, 'inReplyTo').get('id')
        reply = self.find_note(reply_uri) if reply_uri else None

        quote = None
        for field in QUOTE_FIELDS:
            if quote_uri := as1.get_object(obj, field).get('id'):
                quote = self.find_note(quote_uri)
                if quote:
                    break

        note = Note(
            id=new_id(),
            author_id=author.id,
            uri=obj['id'],
            visibility=visibility(obj, author),
            reply_id=reply.id if reply else None,
            reply_uri=reply_uri,
            quote_id=quote.id if quote else None,
            mentions=[tag['href'] for tag in util.get_list(obj, 'tag')
                      if isinstance(tag, dict) and tag.get('type') == 'Mention'
                      and tag.get('href')],
            **note_fields(obj),
        )
        return self.store.put_note(note)


@register
class FollowHandler(Handler):
    VERB = 'Follow'

    def handle(self, activity, actor):
        followee_id = self.object_id(activity)
        followee = self.local_actor(followee_id)
        if not followee:
            raise HandlerValidationError(f'{followee_id} is not a local actor')

        status = 'pending' if followee.manually_approves_followers else 'accepted'
        follow, created = self.store.get_or_create_follow(
            actor.id, followee.id, status=status, activity_id=activity.get('id'))
        if not created:
            return f'{actor.id} already follows {followee.id}'

        self.notify('follow_request' if status == 'pending' else 'follow',
                    followee.id, actor.id)

        if status == 'accepted':
            self.delivery.deliver(activitypub.accept_activity(activity, followee),
                                  [actor], from_actor=followee)
            return f'{actor.id} now follows {followee.id}'

        return f'{actor.id} requested to follow {followee.id}'


class FollowResponseHandler(Handler):
    """Shared lookup for Accept and Reject of a Follow we sent."""

    def find_follow(self, activity, actor):
        inner = as1.get_object(activity)
        if inner.get('type') not in (None, 'Follow'):
            raise HandlerValidationError(f'Can only {self.VERB} Follow, not {inner.get("type")}')

        follow = self.store.find_follow_by_activity(inner.get('id'))
        if not follow:
            follower_id = as1.get_object(inner, 'actor').get('id')
            if follower_id:
                follow = self.store.get_follow(follower_id, actor.id)

        if follow and follow.followee_id != actor.id:
            raise HandlerValidationError(
                f"{actor.id} can't {self.VERB} a follow of {follow.followee_id}")

        return follow


@register
class AcceptHandler(FollowResponseHandler):
    VERB = 'Accept'

    def handle(self, activity, actor):
        follow = self.find_follow(activity, actor)
        if not follow:
            raise HandlerValidationError(f'No follow of {actor.id} to accept')

        if follow.status != 'accepted':
            follow.status = 'accepted'
            self.store.put_follow(follow)

        return f'{actor.id} accepted {follow.follower_id}'


@register
class RejectHandler(FollowResponseHandler):
    VERB = 'Reject'

    def handle(self, activity, actor):
        follow = self.find_follow(activity, actor)
        if not follow:
            return f'No follow of {actor.id} to reject'

        self.store.delete_follow(follow.id)
        return f'{actor.id} rejected {follow.follower_id}'


@register
class CreateHandler(Handler):
    VERB = 'Create'

    def handle(self, activity, actor):
        obj = as1.get_object(activity)
        if obj.keys() <= {'id'}:
            obj = self.fetch_object(self.object_id(activity))

        if obj.get('type') not in NOTE_TYPES:
            return f'Ignoring Create of {obj.get("type")}'
        elif not obj.get('id'):
            raise HandlerValidationError('Create object has no id')

        authors = as1.get_ids(obj, 'attributedTo')
        if authors != [actor.id]:
            raise HandlerValidationError(
                f'{actor.id} is not the author of {obj["id"]}: {authors}')

        if self.store.find_note_by_uri(obj['id']):
            return f'Already have {obj["id"]}'

        note = self.save_note(obj, actor)

        notified = set()
        if note.reply_id:
            reply_to = self.store.get_note(note.reply_id)
            if reply_to and reply_to.local:
                if self.notify('reply', reply_to.author_id, actor.id, note_id=note.id):
                    notified.add(reply_to.author_id)

        for mention in note.mentions:
            if mention not in notified:
                if self.notify('mention', mention, actor.id, note_id=note.id):
                    notified.add(mention)

        return f'Created note {note.id} from {obj["id"]}'


@register
class UpdateHandler(Handler):
    VERB = 'Update'

    def handle(self, activity, actor):
        obj = as1.get_object(activity)
        id = self.object_id(activity)
        type = obj.get('type')

        if type in ACTOR_TYPES:
            if util.fragmentless(id) != actor.id:
                raise HandlerValidationError(f"{actor.id} can't update {id}")
            try:
                updated = activitypub.actor_from_as2(obj, existing=actor)
            except ValueError as e:
                raise HandlerValidationError(str(e))
            if not updated.public_key_pem:
                updated.public_key_pem = actor.public_key_pem
            updated.fetched_at = util.now()
            self.store.put_actor(updated)
            return f'Updated actor {actor.id}'

        elif type in NOTE_TYPES:
            note = self.store.find_note_by_uri(id)
            if not note:
                raise HandlerValidationError(f'No note {id} to update')
            elif note.author_id != actor.id:
                raise HandlerValidationError(f"{actor.id} can't update {id}")

            note = note.copy(**note_fields(obj), updated=util.now())
            self.store.put_note(note)
            return f'Updated note {note.id}'

        return f'Ignoring Update of {type}'


@register
class DeleteHandler(Handler):
    VERB = 'Delete'

    def handle(self, activity, actor):
        id = self.object_id(activity)

        if util.fragmentless(id) == actor.id:
            actor.deleted = True
            self.store.put_actor(actor)
            for follow in (self.store.find_follows(follower_id=actor.id)
                           + self.store.find_follows(followee_id=actor.id)):
                self.store.delete_follow(follow.id)
            return f'Deleted actor {actor.id}'

        note = self.store.find_note_by_uri(id)
        if not note or note.deleted:
            return f'Nothing to delete for {id}'
        elif note.author_id != actor.id:
            raise HandlerValidationError(f"{actor.id} can't delete {id}")

        self.store.put_note(note.copy(deleted=True, text=None, cw=None,
                                      updated=util.now()))
        return f'Deleted note {note.id}'


@register
class LikeHandler(Handler):
    VERB = 'Like'

    def handle(self, activity, actor):
        id = self.object_id(activity)
        note = self.find_note(id)
        if not note or note.deleted:
            raise HandlerValidationError(f'No note {id}')

        reaction, emoji_url = extract_reaction(activity)
        if self.store.find_reaction(actor.id, note.id, reaction):
            return f'{actor.id} already reacted {reaction} to {note.id}'

        self.store.put_reaction(Reaction(
            id=new_id(), actor_id=actor.id, note_id=note.id, reaction=reaction,
            custom_emoji_url=emoji_url, activity_id=activity.get('id')))

        if note.local:
            self.notify('reaction', note.author_id, actor.id, note_id=note.id,
                        reaction=reaction)

        return f'{actor.id} reacted {reaction} to {note.id}'


@register
class AnnounceHandler(Handler):
    VERB = 'Announce'

    def handle(self, activity, actor):
        activity_id = activity.get('id')
        if self.store.find_note_by_uri(activity_id):
            return f'Already have renote {activity_id}'

        id = self.object_id(activity)
        note = self.find_note(id)
        if not note:
            note = self.fetch_note(id)
        if note.deleted:
            raise HandlerValidationError(f'{id} is deleted')

        renote = self.store.put_note(Note(
            id=new_id(), author_id=actor.id, uri=activity_id, renote_id=note.id,
            visibility=visibility(activity, actor)))

        if note.local:
            self.notify('renote', note.author_id, actor.id, note_id=note.id)

        return f'{actor.id} renoted {note.id} as {renote.id}'

    def fetch_note(self, id):
        obj = self.fetch_object(id)
        if obj.get('type') not in NOTE_TYPES or not obj.get('id'):
            raise HandlerValidationError(f'{id} is a {obj.get("type")}, not a note')

        if existing := self.store.find_note_by_uri(obj['id']):
            return existing

        author_id = as1.get_object(obj, 'attributedTo').get('id')
        if not author_id:
            raise HandlerValidationError(f'{id} has no author')

        author = self.resolver.resolve_id(author_id)
        return self.save_note(obj, author)


@register
class UndoHandler(Handler):
    VERB = 'Undo'

    def handle(self, activity, actor):
        inner = as1.get_object(activity)
        inner_id = inner.get('id')
        type = inner.get('type')

        inner_actor = as1.get_object(inner, 'actor').get('id')
        if inner_actor and util.fragmentless(inner_actor) != actor.id:
            raise HandlerValidationError(f"{actor.id} can't undo {inner_actor}'s activity")

        if not type:
            # bare id, find what it refers to
            if self.store.find_follow_by_activity(inner_id):
                type = 'Follow'
            elif self.store.find_reaction_by_activity(inner_id):
                type = 'Like'
            elif self.store.find_note_by_uri(inner_id):
                type = 'Announce'
            else:
                return f'Nothing to undo for {inner_id}'

        if type == 'Follow':
            return self.undo_follow(inner, actor)
        elif type in ('Like', 'EmojiReact'):
            return self.undo_like(inner, actor)
        elif type == 'Announce':
            return self.undo_announce(inner, actor)

        return f'Ignoring Undo of {type}'

    def undo_follow(self, inner, actor):
        follow = self.store.find_follow_by_activity(inner.get('id'))
        if not follow:
            followee_id = as1.get_object(inner).get('id')
            follow = self.store.get_follow(actor.id, followee_id) if followee_id else None

        if not follow or follow.follower_id != actor.id:
            return f'{actor.id} has no follow to undo'

        self.store.delete_follow(follow.id)
        return f'{actor.id} unfollowed {follow.followee_id}'

    def undo_like(self, inner, actor):
        reaction = self.store.find_reaction_by_activity(inner.get('id'))
        if not reaction:
            note_id = as1.get_object(inner).get('id')
            note = self.find_note(note_id) if note_id else None
            if note:
                explicit = inner.get('_misskey_reaction') or inner.get('content')
                reaction = self.store.find_reaction(
                    actor.id, note.id, extract_reaction(inner)[0] if explicit else None)

        if not reaction or reaction.actor_id != actor.id:
            return f'{actor.id} has no reaction to undo'

        self.store.delete_reaction(reaction.id)
        return f'{actor.id} removed reaction {reaction.reaction} from {reaction.note_id}'

    def undo_announce(self, inner, actor):
        renote = self.store.find_note_by_uri(inner.get('id'))
        if (not renote or renote.deleted or renote.author_id != actor.id
                or not renote.renote_id):
            return f'{actor.id} has no renote to undo'

        self.store.put_note(renote.copy(deleted=True, updated=util.now()))
        return f'{actor.id} unrenoted {renote.renote_id}'


@register
class MoveHandler(Handler):
    VERB = 'Move'

    def handle(self, activity, actor):
        old_id = self.object_id(activity)
        if util.fragmentless(old_id) != actor.id:
            raise HandlerValidationError(f"{actor.id} can't move {old_id}")

        target_id = as1.get_object(activity, 'target').get('id')
        if not target_id:
            raise HandlerValidationError('Move has no target')
        elif normalize_host(target_id) == common.LOCAL_DOMAIN:
            raise HandlerValidationError(f"Can't move to local actor {target_id}")

        old = self.resolver.resolve_id(actor.id, require_fresh=True)
        new = self.resolver.resolve_id(target_id, require_fresh=True)

        if old.id not in new.also_known_as:
            raise HandlerValidationError(f'{new.id} alsoKnownAs does not include {old.id}')
        elif new.id not in old.also_known_as and old.moved_to != new.id:
            raise HandlerValidationError(f'{old.id} does not claim {new.id}')

        old.moved_to = new.id
        old.moved_at = util.now()
        self.store.put_actor(old)

        migrated = 0
        for follow in self.store.find_follows(followee_id=old.id):
            follower = self.local_actor(follow.follower_id)
            if not follower:
                continue

            follow_activity = activitypub.follow_activity(follower, new.id)
            new_follow, created = self.store.get_or_create_follow(
                follower.id, new.id, status='pending',
                activity_id=follow_activity['id'])
            if created:
                self.delivery.deliver(follow_activity, [new], from_actor=follower)
            self.store.delete_follow(follow.id)
            migrated += 1

        logger.info(f'Moved {migrated} local followers from {old.id} to {new.id}')
        return f'{old.id} moved to {new.id}, migrated {migrated} followers'
