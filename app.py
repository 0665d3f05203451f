"""Frontend app invoked by gunicorn, eg ``gunicorn app:app``.

Import all modules that define views in the app so that their URL routes get
registered.
"""
from flask_app import app

# import all modules to register their Flask handlers
import activitypub, nodeinfo, pages, webfinger, webmention
