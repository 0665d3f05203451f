"""Flask config and env vars.

https://flask.palletsprojects.com/en/latest/config/
"""
import json
import logging
import os

from webutil import util

DEBUG = os.environ.get('FLASK_DEBUG', '').lower() in ('1', 'true')

SESSION_COOKIE_SECURE = not DEBUG
SESSION_COOKIE_HTTPONLY = True
SESSION_COOKIE_SAMESITE = 'Lax'

# inbox is the biggest body we accept. smaller per-route limits are checked in
# the handlers.
MAX_CONTENT_LENGTH = 10 * 1000 * 1000

PUBLIC_ADDRESS = os.environ.get('PUBLIC_ADDRESS', 'http://localhost:8080').rstrip('/')
SHORT_PUBLIC_ADDRESS = os.environ.get('SHORT_PUBLIC_ADDRESS', '').rstrip('/') or None
ALT_ADDRESSES = [addr.strip().rstrip('/')
                 for addr in os.environ.get('ALT_ADDRESSES', '').split(',')
                 if addr.strip()]

DATABASE_URL = os.environ.get('DATABASE_URL', 'sqlite:///blog.db')
TIMEZONE = os.environ.get('TIMEZONE', 'UTC')

# maps blog name to dict with path, title, description, lang, picture
if blogs_file := os.environ.get('BLOGS_FILE'):
    with open(blogs_file) as f:
        BLOGS = json.load(f)
else:
    BLOGS = {
        'main': {
            'path': '/',
            'title': 'My Blog',
            'description': '',
            'lang': 'en',
        },
    }

if DEBUG:
    ENV = 'development'
    SECRET_KEY = 'sooper seekret'
else:
    ENV = 'production'
    SECRET_KEY = os.environ.get('SECRET_KEY') or util.read('flask_secret_key')
    logging.getLogger().setLevel(logging.INFO)
