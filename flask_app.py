"""Flask application for the federation frontend ("default") service."""
import logging
from pathlib import Path

from flask import Flask
from oauth_dropins.webutil import flask_util

import storage

logger = logging.getLogger(__name__)

app_dir = Path(__file__).parent

app = Flask(__name__, static_folder=None)
app.json.compact = False
app.config.from_pyfile(app_dir / 'config.py')
app.after_request(flask_util.default_modern_headers)
app.register_error_handler(Exception, flask_util.handle_exception)

# don't redirect API requests with blank path elements
app.url_map.merge_slashes = False
app.url_map.redirect_defaults = False

if not isinstance(storage.storage, storage.MemoryStorage):
    app.wsgi_app = flask_util.ndb_context_middleware(
        app.wsgi_app, client=storage.storage.client)
