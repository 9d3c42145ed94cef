"""Unit tests for inbox.py."""
from unittest.mock import Mock, patch

from oauth_dropins.webutil.testutil import requests_response
from oauth_dropins.webutil.util import json_dumps
from werkzeug.exceptions import BadRequest

import common
from common import ActivityInProgress, BlockedInstance, SignatureInvalid
from domains import guard
import handlers
from inbox import Dispatcher
from ledger import Ledger, ledger
from storage import storage
from .testutil import (
    ALICE,
    actor_as2,
    as2_resp,
    BOB,
    EVE,
    REMOTE_PUBLIC_PEM,
    ROTATED_PRIVATE_PEM,
    ROTATED_PUBLIC_PEM,
    signed_envelope,
    signed_headers,
    TestCase,
)

FOLLOW_ID = 'https://mas.to/follows/1'


def follow(followee, id=FOLLOW_ID, actor=ALICE):
    return {
        '@context': 'https://www.w3.org/ns/activitystreams',
        'id': id,
        'type': 'Follow',
        'actor': actor,
        'object': followee,
    }


class CountingHandler(handlers.Handler):
    calls = []

    def handle(self, activity, actor):
        self.calls.append(activity['id'])
        return 'counted'


@patch('requests.post')
@patch('requests.get')
class InboxRouteTest(TestCase):

    def setUp(self):
        super().setUp()
        self.follow = follow(self.user.id)

    def test_follow(self, mock_get, mock_post):
        self.make_remote(ALICE)
        mock_post.return_value = requests_response('', status=202)

        resp = self.post_inbox(self.follow)
        self.assertEqual(202, resp.status_code, resp.get_data(as_text=True))

        self.assertEqual('accepted', storage.get_follow(ALICE, self.user.id).status)
        accept = self.assert_delivered(mock_post, 'https://mas.to/inbox', 'Accept',
                                       self.user)
        self.assertEqual(FOLLOW_ID, accept['object']['id'])
        self.assertTrue(ledger.has_seen(FOLLOW_ID))
        mock_get.assert_not_called()

    def test_follow_user_inbox(self, mock_get, mock_post):
        self.make_remote(ALICE)
        mock_post.return_value = requests_response('', status=202)

        resp = self.post_inbox(self.follow, path='/users/user/inbox')
        self.assertEqual(202, resp.status_code, resp.get_data(as_text=True))
        self.assertIsNotNone(storage.get_follow(ALICE, self.user.id))

    def test_user_inbox_unknown_user(self, mock_get, mock_post):
        resp = self.post_inbox(self.follow, path='/users/nope/inbox')
        self.assertEqual(404, resp.status_code)
        mock_get.assert_not_called()

    def test_user_inbox_deleted_user(self, mock_get, mock_post):
        self.make_user('gone', deleted=True)
        resp = self.post_inbox(self.follow, path='/users/gone/inbox')
        self.assertEqual(404, resp.status_code)

    def test_unknown_signer_is_fetched(self, mock_get, mock_post):
        mock_get.return_value = as2_resp(actor_as2(ALICE))
        mock_post.return_value = requests_response('', status=202)

        resp = self.post_inbox(self.follow)
        self.assertEqual(202, resp.status_code, resp.get_data(as_text=True))
        self.assertEqual(ALICE, mock_get.call_args.args[0])
        self.assertEqual(REMOTE_PUBLIC_PEM, storage.get_actor(ALICE).public_key_pem)

    def test_unknown_signer_fetch_fails(self, mock_get, mock_post):
        mock_get.return_value = requests_response(status=500)
        resp = self.post_inbox(self.follow)
        self.assertEqual(502, resp.status_code)
        self.assertIsNone(storage.get_received_activity(FOLLOW_ID))

    def test_duplicate(self, mock_get, mock_post):
        self.make_remote(ALICE)
        mock_post.return_value = requests_response('', status=202)

        self.assertEqual(202, self.post_inbox(self.follow).status_code)
        self.assertEqual(204, self.post_inbox(self.follow).status_code)

        self.assertEqual(1, len(storage.find_follows(followee_id=self.user.id)))
        self.assertEqual(1, mock_post.call_count)
        self.assertEqual(1, len(storage.received))

    def test_blocked_actor_host(self, mock_get, mock_post):
        self.make_remote(ALICE)
        guard.block('mas.to', reason='spam')

        resp = self.post_inbox(self.follow)
        self.assertEqual(403, resp.status_code)
        self.assertIsNone(storage.get_received_activity(FOLLOW_ID))
        self.assertIsNone(storage.get_follow(ALICE, self.user.id))
        mock_get.assert_not_called()
        mock_post.assert_not_called()

    def test_blocked_key_host_not_fetched(self, mock_get, mock_post):
        guard.block('bad.example')

        resp = self.post_inbox(self.follow, key_id=f'{EVE}#main-key')
        self.assertEqual(403, resp.status_code)
        mock_get.assert_not_called()
        self.assertIsNone(storage.get_actor(EVE))

    def test_bad_signature(self, mock_get, mock_post):
        self.make_remote(ALICE)
        # refetch after the first failure returns the same key
        mock_get.return_value = as2_resp(actor_as2(ALICE))

        resp = self.post_inbox(self.follow, private_pem=ROTATED_PRIVATE_PEM)
        self.assertEqual(401, resp.status_code)
        mock_get.assert_called_once()
        self.assertIsNone(storage.get_follow(ALICE, self.user.id))
        self.assertIsNone(storage.get_received_activity(FOLLOW_ID))

    def test_key_rotation(self, mock_get, mock_post):
        self.make_remote(ALICE)
        mock_get.return_value = as2_resp(actor_as2(ALICE, public_pem=ROTATED_PUBLIC_PEM))
        mock_post.return_value = requests_response('', status=202)

        resp = self.post_inbox(self.follow, private_pem=ROTATED_PRIVATE_PEM)
        self.assertEqual(202, resp.status_code, resp.get_data(as_text=True))
        self.assertEqual(ROTATED_PUBLIC_PEM, storage.get_actor(ALICE).public_key_pem)

    def test_signer_not_actor(self, mock_get, mock_post):
        self.make_remote(ALICE)
        self.make_remote(BOB)

        resp = self.post_inbox(follow(self.user.id, actor=BOB,
                                      id='https://other.social/follows/1'),
                               key_id=f'{ALICE}#main-key')
        self.assertEqual(401, resp.status_code)
        self.assertIsNone(storage.get_follow(BOB, self.user.id))

    def test_activity_id_on_other_host(self, mock_get, mock_post):
        self.make_remote(ALICE)
        resp = self.post_inbox(follow(self.user.id, id='https://other.social/follows/1'))
        self.assertEqual(401, resp.status_code)

    def test_no_signature(self, mock_get, mock_post):
        resp = self.client.post('/inbox', data=json_dumps(self.follow),
                                content_type='application/activity+json')
        self.assertEqual(401, resp.status_code)
        mock_get.assert_not_called()

    def test_tampered_body(self, mock_get, mock_post):
        self.make_remote(ALICE)
        mock_get.return_value = as2_resp(actor_as2(ALICE))

        envelope = signed_envelope(self.follow)
        body = json_dumps({**self.follow, 'object': 'https://localhost/users/other'})
        resp = self.client.post('/inbox', data=body, headers=envelope.headers)
        self.assertEqual(401, resp.status_code)

    def test_bad_json(self, mock_get, mock_post):
        body = b'not json'
        resp = self.client.post('/inbox', data=body,
                                headers=signed_headers(body, f'{ALICE}#main-key'))
        self.assertEqual(400, resp.status_code)

    def test_no_actor(self, mock_get, mock_post):
        body = json_dumps({'id': FOLLOW_ID, 'type': 'Follow'}).encode()
        resp = self.client.post('/inbox', data=body,
                                headers=signed_headers(body, f'{ALICE}#main-key'))
        self.assertEqual(400, resp.status_code)

    def test_handler_failure_then_retry(self, mock_get, mock_post):
        self.make_remote(ALICE)
        like = {
            'id': 'https://mas.to/likes/1',
            'type': 'Like',
            'actor': ALICE,
            'object': common.host_url('notes/n1'),
        }

        resp = self.post_inbox(like)
        self.assertEqual(400, resp.status_code)
        self.assertIsNone(storage.get_received_activity('https://mas.to/likes/1'))
        self.assertFalse(ledger.has_seen('https://mas.to/likes/1'))

        note = self.make_note(self.user, id='n1')
        resp = self.post_inbox(like)
        self.assertEqual(202, resp.status_code, resp.get_data(as_text=True))
        self.assertIsNotNone(storage.find_reaction(ALICE, note.id))
        self.assertTrue(ledger.has_seen('https://mas.to/likes/1'))

    def test_unsupported_verb(self, mock_get, mock_post):
        self.make_remote(ALICE)
        block = {
            'id': 'https://mas.to/blocks/1',
            'type': 'Block',
            'actor': ALICE,
            'object': self.user.id,
        }
        self.assertEqual(202, self.post_inbox(block).status_code)
        self.assertTrue(ledger.has_seen('https://mas.to/blocks/1'))
        self.assertEqual(204, self.post_inbox(block).status_code)

    def test_in_flight(self, mock_get, mock_post):
        self.make_remote(ALICE)
        self.assertTrue(ledger.claim(FOLLOW_ID))

        resp = self.post_inbox(self.follow)
        self.assertEqual(503, resp.status_code)
        self.assertEqual('25', resp.headers['Retry-After'])
        self.assertIsNone(storage.get_follow(ALICE, self.user.id))

    def test_in_flight_lease_expired(self, mock_get, mock_post):
        self.make_remote(ALICE)
        mock_post.return_value = requests_response('', status=202)
        # claimed by another process that then crashed
        self.assertTrue(Ledger().claim(FOLLOW_ID))

        self.assertEqual(503, self.post_inbox(self.follow).status_code)
        self.advance(common.LEASE_EXPIRATION)
        self.assertEqual(202, self.post_inbox(self.follow).status_code)


@patch('requests.get')
class DispatcherTest(TestCase):

    def setUp(self):
        super().setUp()
        CountingHandler.calls = []
        self.delivery = Mock()
        self.dispatcher = Dispatcher(registry={'Follow': CountingHandler},
                                     delivery=self.delivery)
        self.alice = self.make_remote(ALICE)
        self.follow = follow(self.user.id)

    def test_dispatch_twice_runs_handler_once(self, _):
        self.assertEqual(('counted', 202),
                         self.dispatcher.dispatch(signed_envelope(self.follow)))
        self.assertEqual(('Already seen', 204),
                         self.dispatcher.dispatch(signed_envelope(self.follow)))
        self.assertEqual([FOLLOW_ID], CountingHandler.calls)
        self.assertEqual(1, len(storage.received))

    def test_handler_gets_stores_and_delivery(self, _):
        got = {}

        class Capture(handlers.Handler):
            def handle(self, activity, actor):
                got.update(store=self.store, delivery=self.delivery, actor=actor)

        Dispatcher(registry={'Follow': Capture}, delivery=self.delivery).dispatch(
            signed_envelope(self.follow))
        self.assertIs(storage, got['store'])
        self.assertIs(self.delivery, got['delivery'])
        self.assertEqual(ALICE, got['actor'].id)

    def test_concurrent_delivery_in_progress(self, _):
        errors = []
        dispatcher = self.dispatcher

        class Reentrant(handlers.Handler):
            def handle(self, activity, actor):
                try:
                    dispatcher.dispatch(signed_envelope(activity))
                except ActivityInProgress as e:
                    errors.append(e)
                return 'done'

        dispatcher.registry = {'Follow': Reentrant}
        self.assertEqual(('done', 202), dispatcher.dispatch(signed_envelope(self.follow)))
        self.assertEqual(1, len(errors))
        self.assertEqual(503, errors[0].code)
        self.assertTrue(ledger.has_seen(FOLLOW_ID))

    def test_slow_handler_redelivery_in_progress(self, _):
        errors = []
        dispatcher = self.dispatcher
        test = self

        class Slow(handlers.Handler):
            def handle(self, activity, actor):
                CountingHandler.calls.append(activity['id'])
                # outlives the lease
                test.advance(common.LEASE_EXPIRATION * 3)
                try:
                    dispatcher.dispatch(signed_envelope(activity))
                except ActivityInProgress as e:
                    errors.append(e)
                return 'done'

        dispatcher.registry = {'Follow': Slow}
        self.assertEqual(('done', 202), dispatcher.dispatch(signed_envelope(self.follow)))
        self.assertEqual(1, len(errors))
        self.assertEqual([FOLLOW_ID], CountingHandler.calls)
        self.assertEqual('done', storage.get_received_activity(FOLLOW_ID).status)

    def test_handler_exception_releases_claim(self, _):
        class Boom(handlers.Handler):
            def handle(self, activity, actor):
                raise RuntimeError('boom')

        self.dispatcher.registry = {'Follow': Boom}
        with self.assertRaises(RuntimeError):
            self.dispatcher.dispatch(signed_envelope(self.follow))

        self.assertIsNone(storage.get_received_activity(FOLLOW_ID))
        self.dispatcher.registry = {'Follow': CountingHandler}
        self.assertEqual(202, self.dispatcher.dispatch(signed_envelope(self.follow))[1])

    def test_blocked_raises(self, mock_get):
        guard.block('mas.to')
        with self.assertRaises(BlockedInstance):
            self.dispatcher.dispatch(signed_envelope(self.follow))
        self.assertEqual([], CountingHandler.calls)

    def test_bad_signature_raises(self, mock_get):
        mock_get.return_value = as2_resp(actor_as2(ALICE))
        with self.assertRaises(SignatureInvalid):
            self.dispatcher.dispatch(signed_envelope(
                self.follow, private_pem=ROTATED_PRIVATE_PEM))

    def test_gone_signer_without_key(self, mock_get):
        storage.put_actor(self.alice.copy(public_key_pem=None, fetch_failure_count=5,
                                          last_fetch_gone=True))
        with self.assertRaises(SignatureInvalid):
            self.dispatcher.dispatch(signed_envelope(self.follow))
        mock_get.assert_not_called()

    def test_parse_synthesizes_id(self, _):
        activity = Dispatcher.parse(json_dumps({
            'type': 'Like',
            'actor': ALICE,
            'object': 'https://localhost/notes/1',
        }).encode())
        self.assertEqual(
            f'{ALICE}#Like-https://localhost/notes/1-{self.now.isoformat()}',
            activity['id'])

    def test_parse_invalid(self, _):
        for body in (b'', b'[]', b'{}', b'"x"', b'{"type": "Like"}',
                     b'{"type": "Like", "actor": "alice"}',
                     b'{"type": 3, "actor": "https://mas.to/users/alice"}'):
            with self.subTest(body=body):
                with self.assertRaises(BadRequest):
                    Dispatcher.parse(body)
