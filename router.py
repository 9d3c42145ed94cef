"""Background service for task queues and cron: outbound delivery, ledger
pruning, and instance refreshes."""
import logging
from pathlib import Path

from flask import Flask, request
from oauth_dropins.webutil import flask_util

import common
import delivery
from ledger import ledger
from nodeinfo import instances
import storage

logger = logging.getLogger(__name__)

# Flask app
app = Flask(__name__)
app_dir = Path(__file__).parent
app.config.from_pyfile(app_dir / 'config.py')
app.register_error_handler(Exception, flask_util.handle_exception)

if not isinstance(storage.storage, storage.MemoryStorage):
    app.wsgi_app = flask_util.ndb_context_middleware(
        app.wsgi_app, client=storage.storage.client)


# task queue handlers
app.add_url_rule('/queue/send', view_func=delivery.send_task, methods=['POST'])


@app.get('/liveness_check')
@app.get('/readiness_check')
def health_check():
    """App Engine Flex health checks.

    https://cloud.google.com/appengine/docs/flexible/reference/app-yaml?tab=python#updated_health_checks
    """
    return 'OK'


@app.post('/cron/prune-received-activities')
def prune_received_activities():
    """Deletes Received-Activity ledger records past their retention period."""
    count = ledger.prune(common.RECEIVED_ACTIVITY_RETENTION)
    return f'Pruned {count}'


@app.post('/cron/refresh-instances')
def refresh_instances():
    """Refreshes stale remote instance info, oldest first."""
    limit = request.values.get('limit', type=int) or 20
    count = instances.refresh_stale(limit=limit)
    return f'Refreshing {count}'
