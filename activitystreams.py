"""ActivityStreams 2 representations of blogs and posts.

* https://www.w3.org/TR/activitystreams-core/
* https://docs.joinmastodon.org/spec/activitypub/
"""
from datetime import timezone
import logging

from flask import current_app
from granary import as2
from webutil import util
import pytz

import common
from common import AS2_CONTEXT
import keys
from models import Blog
import posts

logger = logging.getLogger(__name__)

# post parameters written when a public post is created or updated
MENTIONS_PARAM = 'activitypubmentions'
REPLY_OBJECT_PARAM = 'activitypubreplyobject'
REPLY_ACTOR_PARAM = 'activitypubreplyactor'


def mentioned_actors(post):
    """Returns the ids of the actors a post mentions or replies to, without duplicates."""
    ids = post.parameters.get(MENTIONS_PARAM, []) + [post.parameter(REPLY_ACTOR_PARAM)]
    return list(dict.fromkeys(id for id in ids if id))


def rfc3339(dt):
    """Formats a datetime in the configured time zone, eg ``2024-01-02T03:04:05+01:00``.

    Naive datetimes are assumed to be UTC.
    """
    if not dt:
        return None
    if not dt.tzinfo:
        dt = dt.replace(tzinfo=timezone.utc)
    tz = pytz.timezone(current_app.config.get('TIMEZONE') or 'UTC')
    return dt.astimezone(tz).replace(microsecond=0).isoformat()


def post_to_note(post):
    """Converts a post to an AS2 ``Note``, or ``Article`` if it has a title.

    Args:
      post (models.Post)

    Returns:
      dict: AS2 object
    """
    blog = Blog.get(post.blog)
    url = posts.url(post)
    title = common.html_text(post.parameter('title'))
    mentions = mentioned_actors(post)

    return util.trim_nulls({
        '@context': [AS2_CONTEXT],
        'type': 'Article' if title else 'Note',
        'id': url,
        'url': url,
        'attributedTo': blog.iri() if blog else None,
        'to': [as2.PUBLIC_AUDIENCE],
        'cc': mentions,
        'mediaType': 'text/html',
        'content': post.content,
        'name': title,
        'published': rfc3339(post.published),
        'updated': rfc3339(post.updated),
        'inReplyTo': post.parameter('replylink'),
        'attachment': [{
            'type': 'Image',
            'url': image,
        } for image in post.parameters.get('images', [])],
        'tag': [{
            'type': 'Hashtag',
            'name': f'#{tag.lstrip("#")}',
        } for tag in post.parameters.get('tags', [])] + [{
            'type': 'Mention',
            'href': actor,
        } for actor in mentions],
    })


def blog_to_person(blog, address=None):
    """Converts a blog to an AS2 ``Person``.

    On an alt address, the person has ``movedTo`` pointing to the canonical
    actor on our main address.

    Args:
      blog (models.Blog)
      address (str): the address being served, defaults to the main public
        address

    Returns:
      dict: AS2 actor
    """
    main = common.public_address()
    address = (address or main).rstrip('/')
    iri = blog.iri(address)
    canonical = blog.iri(main)

    also_known_as = []
    for addr in [main] + common.alt_addresses():
        other = blog.iri(addr)
        if other != iri and other not in also_known_as:
            also_known_as.append(other)

    return util.trim_nulls({
        '@context': [AS2_CONTEXT],
        'type': 'Person',
        'id': iri,
        'url': iri,
        'name': blog.title,
        'summary': blog.description,
        'preferredUsername': blog.name,
        'inbox': blog.inbox(address),
        'publicKey': {
            'id': blog.key_id(address),
            'owner': iri,
            'publicKeyPem': keys.public_pem(),
        },
        'icon': {
            'type': 'Image',
            'url': blog.picture,
        } if blog.picture else None,
        'alsoKnownAs': also_known_as,
        'movedTo': canonical if iri != canonical else None,
    })
