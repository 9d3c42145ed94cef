"""Unit tests for webfinger.py."""
from unittest.mock import patch

from oauth_dropins.webutil.testutil import requests_response
import requests

from common import DiscoveryFailed
import webfinger
from webfinger import fetch_actor_url, parse_handle
from .testutil import ALICE, TestCase

WEBFINGER = {
    'subject': 'acct:alice@mas.to',
    'aliases': ['https://mas.to/@alice', ALICE],
    'links': [{
        'rel': 'http://webfinger.net/rel/profile-page',
        'type': 'text/html',
        'href': 'https://mas.to/@alice',
    }, {
        'rel': 'self',
        'type': 'application/activity+json',
        'href': ALICE,
    }],
}


@patch('requests.get')
class WebfingerTest(TestCase):

    def test_parse_handle(self, _):
        for handle in ('@alice@mas.to', 'alice@mas.to', 'acct:alice@mas.to',
                       '@alice@MAS.TO'):
            with self.subTest(handle=handle):
                self.assertEqual(('alice', 'mas.to'), parse_handle(handle))

    def test_parse_handle_invalid(self, _):
        for bad in (None, '', 'alice', '@alice', '@alice@', 'alice@localhost:x',
                    '@alice@mas'):
            with self.subTest(handle=bad):
                with self.assertRaises(ValueError):
                    parse_handle(bad)

    def test_fetch_actor_url(self, mock_get):
        mock_get.return_value = requests_response(WEBFINGER)
        self.assertEqual(ALICE, fetch_actor_url('@alice@mas.to'))

        url = mock_get.call_args.args[0]
        self.assertEqual(
            'https://mas.to/.well-known/webfinger?resource=acct:alice@mas.to', url)

    def test_fetch_actor_url_cached(self, mock_get):
        mock_get.return_value = requests_response(WEBFINGER)
        self.assertEqual(ALICE, fetch_actor_url('alice@mas.to'))
        self.assertEqual(ALICE, fetch_actor_url('alice@mas.to'))
        self.assertEqual(1, mock_get.call_count)

    def test_fetch_actor_url_ld_json_type(self, mock_get):
        mock_get.return_value = requests_response({'links': [{
            'rel': 'self',
            'type': 'application/ld+json; profile="https://www.w3.org/ns/activitystreams"',
            'href': ALICE,
        }]})
        self.assertEqual(ALICE, fetch_actor_url('alice@mas.to'))

    def test_fetch_actor_url_no_self_link(self, mock_get):
        mock_get.return_value = requests_response({'links': [WEBFINGER['links'][0]]})
        with self.assertRaises(DiscoveryFailed):
            fetch_actor_url('alice@mas.to')

    def test_fetch_actor_url_failure_not_cached(self, mock_get):
        mock_get.side_effect = [
            requests_response('', status=404),
            requests_response(WEBFINGER),
        ]
        with self.assertRaises(DiscoveryFailed):
            fetch_actor_url('alice@mas.to')
        self.assertEqual(ALICE, fetch_actor_url('alice@mas.to'))

    def test_fetch_not_json(self, mock_get):
        mock_get.return_value = requests_response('<html>nope</html>',
                                                  content_type='text/html')
        with self.assertRaises(DiscoveryFailed):
            webfinger.fetch('alice@mas.to')

    def test_fetch_connection_error(self, mock_get):
        mock_get.side_effect = requests.ConnectionError('foo')
        with self.assertRaises(DiscoveryFailed):
            webfinger.fetch('alice@mas.to')

    def test_fetch_url(self, mock_get):
        mock_get.return_value = requests_response(WEBFINGER)
        self.assertEqual(WEBFINGER, webfinger.fetch(ALICE))
        self.assertEqual(
            f'https://mas.to/.well-known/webfinger?resource={ALICE}',
            mock_get.call_args.args[0])
