"""Flask config and env vars.

https://flask.palletsprojects.com/en/latest/config/
"""
import logging

from oauth_dropins.webutil import appengine_config, appengine_info, util

# inbound deliveries are small, but some servers send large Update activities
# with inlined collections
MAX_CONTENT_LENGTH = 1000000

if appengine_info.DEBUG:
    ENV = 'development'
    SECRET_KEY = 'sooper seekret'

else:
    ENV = 'production'
    SECRET_KEY = util.read('flask_secret_key')

    logging.getLogger().setLevel(logging.INFO)
    if logging_client := getattr(appengine_config, 'logging_client', None):
        logging_client.setup_logging(log_level=logging.INFO)

    # signature verification details are logged at debug
    logging.getLogger('signature').setLevel(logging.INFO)
    logging.getLogger('urllib3').setLevel(logging.WARNING)

# for debugging ndb. also needs NDB_DEBUG env var.
# https://github.com/googleapis/python-ndb/blob/c55ec62b5153787404488b046c4bf6ffa02fee64/google/cloud/ndb/utils.py#L78-L81
# logging.getLogger('google.cloud').propagate = True
# logging.getLogger('google.cloud.ndb').setLevel(logging.DEBUG)
