"""Blog home pages and post pages, as HTML or AS2, and the alt domain redirect."""
import logging

from flask import redirect, render_template, request

import activitystreams
import common
from common import error
from flask_app import app
from models import Blog
import posts

logger = logging.getLogger(__name__)

# paths on alt domains that are served normally instead of redirected
ALT_DOMAIN_PATH_PREFIXES = (
    '/.well-known/',
    '/activitypub/',
    '/nodeinfo',
)


@app.before_request
def redirect_alt_domain():
    """Redirects requests on alt domains to our main address.

    ActivityPub and discovery requests are still served there, so that actors
    on the old domain keep working until their followers move.
    """
    if not common.is_alt_host(request.host):
        return

    if (request.path.startswith(ALT_DOMAIN_PATH_PREFIXES)
            or common.as2_request_type()):
        return

    # full_path always has a trailing ?
    url = common.public_address() + request.full_path.removesuffix('?')
    logger.info(f'Redirecting alt domain request to {url}')
    return redirect(url, code=301)


def _as2(obj):
    return obj, {
        'Content-Type': common.as2_request_type(),
        'Vary': 'Accept',
    }


@app.get('/')
@app.get('/<path:path>')
def page(path=''):
    """Serves a blog's home page or a post."""
    path = '/' + path

    if blog := Blog.for_path(path):
        if path != blog.path:
            return redirect(blog.path, code=301)
        return blog_home(blog)

    post = posts.get_post(path)
    if not post and path != '/' and path.endswith('/'):
        if posts.get_post(path.rstrip('/')):
            return redirect(path.rstrip('/'), code=301)

    # only hidden posts read the session, so that public pages don't get
    # Vary: Cookie
    if not post or not (posts.is_visible(post) or common.is_logged_in()):
        error(f'No page at {path}', status=404)

    return post_page(post)


def blog_home(blog):
    if common.as2_request_type():
        address = common.alt_address_for_host(request.host)
        return _as2(activitystreams.blog_to_person(blog, address=address))

    entries = [{
        'url': posts.url(post),
        'title': common.html_text(post.parameter('title')),
        'published': activitystreams.rfc3339(post.published),
    } for post in posts.blog_posts(blog.name)]

    return render_template('blog.html', blog=blog, posts=entries, lang=blog.lang), {
        'Content-Type': common.CONTENT_TYPE_HTML,
        'Vary': 'Accept',
    }


def post_page(post):
    if common.as2_request_type():
        return _as2(activitystreams.post_to_note(post))

    blog = Blog.get(post.blog) or Blog(post.blog)
    return render_template(
        'post.html',
        blog=blog,
        blog_url=blog.iri(),
        url=posts.url(post),
        title=common.html_text(post.parameter('title')),
        reply=post.parameter('replylink'),
        like=post.parameter('likelink'),
        bookmark=post.parameter('bookmarklink'),
        content=posts.rendered_html(post),
        images=post.parameters.get('images', []),
        published=activitystreams.rfc3339(post.published),
        updated=activitystreams.rfc3339(post.updated),
        lang=blog.lang,
    ), {
        'Content-Type': common.CONTENT_TYPE_HTML,
        'Vary': 'Accept',
    }
