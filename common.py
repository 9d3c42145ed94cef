"""Misc common utilities."""
import base64
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
import logging
import os
import threading
import urllib.parse

import cachetools
from Crypto.Util import number
from flask import has_request_context, request
from google.protobuf.timestamp_pb2 import Timestamp
from oauth_dropins.webutil import appengine_info, flask_util, util
from oauth_dropins.webutil.appengine_info import DEBUG
from oauth_dropins.webutil.util import json_dumps
from werkzeug.exceptions import (
    BadGateway,
    BadRequest,
    Forbidden,
    ServiceUnavailable,
    Unauthorized,
)

logger = logging.getLogger(__name__)


def _env_int(name, default):
    return int(os.getenv(name, default))


def _env_timedelta(name, default):
    """Reads a number of seconds from an env var, defaults to ``default``."""
    val = os.getenv(name)
    return timedelta(seconds=float(val)) if val else default


LOCAL_DOMAIN = os.getenv('LOCAL_DOMAIN', 'localhost')

USER_AGENT = f'fedcore (https://{LOCAL_DOMAIN}/)'
util.set_user_agent(USER_AGENT)

# seconds, per outbound network call
HTTP_TIMEOUT = _env_int('HTTP_TIMEOUT', 10)

# Remote Actor cache
ACTOR_TTL = _env_timedelta('ACTOR_TTL', timedelta(hours=24))
ACTOR_GONE_THRESHOLD = _env_int('ACTOR_GONE_THRESHOLD', 5)

# Remote Instance cache
INSTANCE_TTL = _env_timedelta('INSTANCE_TTL', timedelta(hours=24))
INSTANCE_MAX_ERRORS = _env_int('INSTANCE_MAX_ERRORS', 5)
INSTANCE_REFRESH_BATCH = _env_int('INSTANCE_REFRESH_BATCH', 5)

# HTTP Signatures
SIGNATURE_MAX_SKEW = _env_timedelta('SIGNATURE_MAX_SKEW', timedelta(seconds=30))

# outbound delivery
DELIVERY_MAX_ATTEMPTS = _env_int('DELIVERY_MAX_ATTEMPTS', 5)
DELIVERY_BACKOFF_BASE = _env_timedelta('DELIVERY_BACKOFF_BASE', timedelta(seconds=1))

# Received-Activity ledger
RECEIVED_ACTIVITY_RETENTION = _env_timedelta('RECEIVED_ACTIVITY_RETENTION',
                                             timedelta(days=7))
LEASE_EXPIRATION = timedelta(seconds=25)

# Cloud Tasks
TASKS_LOCATION = os.getenv('TASKS_LOCATION', 'us-central1')
RUN_TASKS_INLINE = False  # overridden by unit tests

PUBLIC_AUDIENCES = (
    'https://www.w3.org/ns/activitystreams#Public',
    'as:Public',
    'Public',
)


#
# Error taxonomy
#
class SignatureInvalid(Unauthorized):
    """Inbound HTTP Signature is missing, malformed, or doesn't verify."""


class BlockedInstance(Forbidden):
    """The remote instance is on the moderator blocklist."""


class UnknownActor(BadGateway):
    """Couldn't fetch or parse a remote actor. Transient, sender should retry."""


class DiscoveryFailed(UnknownActor):
    """WebFinger account discovery failed."""


class HandlerValidationError(BadRequest):
    """An activity is well formed but can't be applied, eg its object is missing."""


class ActivityInProgress(ServiceUnavailable):
    """Another request is currently handling this same activity id."""
    def __init__(self, description=None, retry_after=int(LEASE_EXPIRATION.total_seconds())):
        super().__init__(description=description, retry_after=retry_after)


class DeliveryTransportError(Exception):
    """Outbound delivery failed in a way that's worth retrying."""
    def __init__(self, message, status=None):
        super().__init__(message)
        self.status = status


class DeliveryPermanentError(Exception):
    """Outbound delivery failed definitively. Stop retrying this destination."""
    def __init__(self, message, status=None, gone=False):
        super().__init__(message)
        self.status = status
        self.gone = gone


class FailureClassifier:
    """Classifies failed HTTP fetches and deliveries.

    Returns one of:

    * ``gone``: the remote resource is permanently absent, eg HTTP 404 or 410
    * ``permanent``: any other definitive rejection, eg 401, 403
    * ``transient``: worth retrying, eg timeouts, connection failures, 429, 5xx

    Args:
      gone_statuses (sequence of int)
      transient_statuses (sequence of int): in addition to all 5xx
    """
    GONE = 'gone'
    PERMANENT = 'permanent'
    TRANSIENT = 'transient'

    def __init__(self, gone_statuses=(404, 410), transient_statuses=(408, 429)):
        self.gone_statuses = frozenset(gone_statuses)
        self.transient_statuses = frozenset(transient_statuses)

    def classify(self, status=None):
        """
        Args:
          status (int or None): HTTP status code, or None if we didn't get a
            response at all, eg timeout or connection failure

        Returns:
          str: :attr:`GONE`, :attr:`PERMANENT`, or :attr:`TRANSIENT`
        """
        if status is None:
            return self.TRANSIENT

        status = int(status)
        if status in self.gone_statuses:
            return self.GONE
        elif status in self.transient_statuses or status >= 500:
            return self.TRANSIENT
        elif 400 <= status < 500:
            return self.PERMANENT

        return self.TRANSIENT

    def is_gone(self, status):
        return self.classify(status) == self.GONE


classifier = FailureClassifier()


class KeyedLocks:
    """Hands out one reentrant lock per key, eg per actor id or per host."""

    def __init__(self, maxsize=50000):
        self._locks = cachetools.LRUCache(maxsize)
        self._lock = threading.Lock()

    def __call__(self, key):
        with self._lock:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.RLock()
            return lock


def run_in_background(executor, fn, *args, **kwargs):
    """Runs ``fn`` on ``executor``, or inline if :attr:`RUN_TASKS_INLINE`.

    Returns:
      concurrent.futures.Future or None: None if run inline
    """
    if RUN_TASKS_INLINE:
        logger.debug(f'Running {fn.__qualname__} inline')
        fn(*args, **kwargs)
        return None

    return executor.submit(fn, *args, **kwargs)


def new_executor(max_workers, name):
    return ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix=name)


def create_task(queue, delay=None, **params):
    """Adds a Cloud Tasks task.

    If :attr:`RUN_TASKS_INLINE` or running in a local server, runs the task
    handler inline instead of creating a task.

    Args:
      queue (str): queue name
      delay (datetime.timedelta): optional, used as task ETA (from now)
      params: form-encoded and included in the task request body. dicts are
        JSON-encoded first.

    Returns:
      flask.Response or (str, int): response from either running the task
      inline, or from creating the task
    """
    assert queue
    path = f'/queue/{queue}'

    loggable = {k: '{...}' if isinstance(v, dict) else v for k, v in params.items()}
    params = {k: json_dumps(v, sort_keys=True) if isinstance(v, dict) else v
              for k, v in params.items()}

    if RUN_TASKS_INLINE or appengine_info.LOCAL_SERVER:
        logger.info(f'Running task inline: {queue} {loggable}')
        from router import app
        return app.test_client().post(
            path, data=params, headers={flask_util.CLOUD_TASKS_TASK_HEADER: 'x'})

    from oauth_dropins.webutil.appengine_config import tasks_client

    body = urllib.parse.urlencode(sorted(params.items())).encode()
    task = {
        'app_engine_http_request': {
            'http_method': 'POST',
            'relative_uri': path,
            'body': body,
            'headers': {'Content-Type': 'application/x-www-form-urlencoded'},
        },
    }
    if delay:
        eta_seconds = int(util.to_utc_timestamp(util.now()) + delay.total_seconds())
        task['schedule_time'] = Timestamp(seconds=eta_seconds)

    parent = tasks_client.queue_path(appengine_info.APP_ID, TASKS_LOCATION, queue)
    task = tasks_client.create_task(parent=parent, task=task)
    msg = f'Added {queue} task {task.name.split("/")[-1]} delay {delay} {loggable}'
    logger.info(msg)
    return msg, 202


def base64_to_long(x):
    """Converts from URL safe base64 encoding to long integer.

    Used in :meth:`models.Actor.public_pem` and :meth:`models.Actor.private_pem`.
    """
    return number.bytes_to_long(base64.urlsafe_b64decode(x))


def long_to_base64(x):
    """Converts from long integer to base64 URL safe encoding."""
    return base64.urlsafe_b64encode(number.long_to_bytes(x))


def host_url(path=''):
    return f'https://{LOCAL_DOMAIN}/{path.lstrip("/")}'


def content_type(resp):
    """Returns a :class:`requests.Response`'s Content-Type, without charset suffix."""
    type = resp.headers.get('Content-Type')
    if type:
        return type.split(';')[0]


def report_error(msg, *, exception=False, **kwargs):
    """Reports an error to StackDriver Error Reporting.

    https://cloud.google.com/python/docs/reference/clouderrorreporting/latest/google.cloud.error_reporting.client.Client

    If ``DEBUG`` and ``exception`` are ``True``, re-raises the exception instead.
    """
    if DEBUG:
        if exception:
            raise
        else:
            logger.error(msg)
            return

    from google.cloud.error_reporting.util import build_flask_context
    from oauth_dropins.webutil.appengine_config import error_reporting_client

    http_context = build_flask_context(request) if has_request_context() else None

    try:
        if exception:
            logger.error('', exc_info=True)
            error_reporting_client.report_exception(
                http_context=http_context, **kwargs)
        else:
            logger.error(msg)
            error_reporting_client.report(
                msg, http_context=http_context, **kwargs)
    except BaseException:
        kwargs['exception'] = exception
        logger.warning(f'Failed to report error! {kwargs}', exc_info=exception)
