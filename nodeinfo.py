"""NodeInfo discovery and document.

* https://nodeinfo.diaspora.software/protocol
* https://github.com/jhass/nodeinfo/blob/main/schemas/2.1/schema.json
"""
import logging

import common
from flask_app import app
from models import Blog
import posts

logger = logging.getLogger(__name__)

SCHEMA = 'http://nodeinfo.diaspora.software/ns/schema/2.1'
CONTENT_TYPE = f'application/json; profile="{SCHEMA}#"'


@app.get('/.well-known/nodeinfo')
def nodeinfo_jrd():
    return {
        'links': [{
            'rel': SCHEMA,
            'href': common.host_url('nodeinfo'),
        }],
    }, {
        'Content-Type': 'application/jrd+json; charset=utf-8',
        'Access-Control-Allow-Origin': '*',
    }


@app.get('/nodeinfo')
def nodeinfo():
    return {
        'version': '2.1',
        'software': {
            'name': common.APP_NAME,
            'version': common.VERSION,
        },
        'protocols': [
            'activitypub',
            'micropub',
            'webmention',
        ],
        'services': {
            'inbound': [],
            'outbound': [
                'atom1.0',
                'rss2.0',
                'jsonfeed',
            ],
        },
        'usage': {
            'users': {
                'total': len(Blog.all()),
            },
            'localPosts': posts.count_published(),
        },
        'openRegistrations': False,
        'metadata': {},
    }, {
        'Content-Type': CONTENT_TYPE,
        'Access-Control-Allow-Origin': '*',
    }
