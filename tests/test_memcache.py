"""Unit tests for memcache.py."""
import memcache
from memcache import memoize, memoize_key, pickle_memcache
from models import Actor
from .testutil import TestCase


class MemcacheTest(TestCase):

    def test_key(self):
        self.assertEqual(b'foo', memcache.key('foo'))
        self.assertEqual(b'a%20b', memcache.key('a b'))
        self.assertEqual(memcache.KEY_MAX_LEN, len(memcache.key('x' * 300)))

    def test_memoize_int(self):
        calls = []

        @memoize()
        def foo(x, y, z=None):
            calls.append((x, y, z))
            return len(calls)

        self.assertEqual(1, foo(1, 'a', z=1))
        self.assertEqual([(1, 'a', 1)], calls)
        self.assertEqual(1, foo(1, 'a', z=1))
        self.assertEqual([(1, 'a', 1)], calls)

        self.assertEqual(2, foo(2, 'b', z=2))
        self.assertEqual([(1, 'a', 1), (2, 'b', 2)], calls)
        self.assertEqual(1, foo(1, 'a', z=1))
        self.assertEqual(2, foo(2, 'b', z=2))
        self.assertEqual([(1, 'a', 1), (2, 'b', 2)], calls)

    def test_memoize_str(self):
        calls = []

        @memoize()
        def foo(x):
            calls.append(x)
            return str(x)

        self.assertEqual('1', foo(1))
        cached = foo(1)
        self.assertEqual('1', cached)
        self.assertIsInstance(cached, str)
        self.assertEqual([1], calls)

    def test_memoize_record(self):
        calls = []

        @memoize()
        def foo(username):
            calls.append(username)
            return Actor(id=f'https://mas.to/users/{username}', username=username,
                         host='mas.to')

        alice = foo('alice')
        self.assertEqual('https://mas.to/users/alice', alice.id)
        self.assertEqual(alice, foo('alice'))
        self.assertEqual(['alice'], calls)

        self.assertEqual('bob', foo('bob').username)
        self.assertEqual(['alice', 'bob'], calls)

    def test_memoize_None(self):
        calls = []

        @memoize()
        def foo(x):
            calls.append(x)
            return None

        self.assertIsNone(foo('a'))
        self.assertIsNone(foo('a'))
        self.assertEqual(['a'], calls)

    def test_memoize_exception_not_cached(self):
        calls = []

        @memoize()
        def foo(x):
            calls.append(x)
            if len(calls) == 1:
                raise ValueError('nope')
            return x

        with self.assertRaises(ValueError):
            foo('a')
        self.assertEqual('a', foo('a'))
        self.assertEqual('a', foo('a'))
        self.assertEqual(['a', 'a'], calls)

    def test_memoize_key_fn(self):
        calls = []

        @memoize(key=lambda x: x + 1)
        def foo(x):
            calls.append(x)
            return str(x)

        self.assertEqual('5', foo(5))
        self.assertEqual([5], calls)

        self.assertIsNone(pickle_memcache.get(memoize_key(foo.__wrapped__, 5)))
        self.assertEqual(('5',), pickle_memcache.get(memoize_key(foo.__wrapped__, 6)))

        self.assertEqual('5', foo(5))
        self.assertEqual([5], calls)

    def test_memoize_key_fn_returns_None(self):
        calls = []

        @memoize(key=lambda x: None)
        def foo(x):
            calls.append(x)
            return str(x)

        self.assertEqual('5', foo(5))
        self.assertEqual('5', foo(5))
        self.assertEqual([5, 5], calls)

    def test_memoize_write_false(self):
        calls = []

        @memoize(write=False)
        def foo(x):
            calls.append(x)
            return str(x)

        self.assertEqual('5', foo(5))
        self.assertIsNone(pickle_memcache.get(memoize_key(foo.__wrapped__, 5)))
        self.assertEqual('5', foo(5))
        self.assertEqual([5, 5], calls)

    def test_memoize_write_callable(self):
        calls = []

        @memoize(write=lambda x: x == 5)
        def foo(x):
            calls.append(x)
            return str(x)

        self.assertEqual('5', foo(5))
        self.assertEqual('5', foo(5))
        self.assertEqual([5], calls)

        self.assertEqual('6', foo(6))
        self.assertEqual('6', foo(6))
        self.assertEqual([5, 6, 6], calls)

    def test_memoize_version(self):
        calls = []

        def foo(x):
            calls.append(x)
            return x

        self.assertEqual(1, memoize(version=1)(foo)(1))
        self.assertEqual(1, memoize(version=1)(foo)(1))
        self.assertEqual(1, memoize(version=2)(foo)(1))
        self.assertEqual([1, 1], calls)
