"""Flask application for the frontend service."""
import logging
from pathlib import Path

from flask import Flask
from webutil import flask_util, util

import common
import models

logger = logging.getLogger(__name__)
logging.getLogger('urllib3').setLevel(logging.INFO)

app_dir = Path(__file__).parent

app = Flask(__name__, static_folder=None)
app.template_folder = './templates'
app.json.compact = False
app.config.from_pyfile(app_dir / 'config.py')
app.after_request(flask_util.default_modern_headers)
app.register_error_handler(Exception, flask_util.handle_exception)

# post paths are matched literally, don't let werkzeug rewrite them
app.url_map.merge_slashes = False
app.url_map.strict_slashes = False

util.set_user_agent(common.user_agent(app.config['PUBLIC_ADDRESS']))

models.init_db(app.config['DATABASE_URL'])
