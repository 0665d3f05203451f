"""Handles requests for WebFinger endpoints, and fetches remote WebFinger data.

* https://webfinger.net/
* https://tools.ietf.org/html/rfc7033
"""
import logging
from urllib.parse import urlparse

from flask import render_template, request
from granary import as2
from webutil import flask_util, util
from webutil.flask_util import flash
from webutil.util import json_dumps
import requests

import common
from common import error
from flask_app import app
from models import Blog

logger = logging.getLogger(__name__)

CONTENT_TYPE_JRD = 'application/jrd+json; charset=utf-8'
CONTENT_TYPE_XRD = 'application/xrd+xml; charset=utf-8'
PROFILE_PAGE_REL = 'http://webfinger.net/rel/profile-page'
SUBSCRIBE_LINK_REL = 'http://ostatus.org/schema/1.0/subscribe'


def resources():
    """Returns all resources we answer WebFinger queries for.

    Returns:
      dict: maps ``acct:`` URI or actor IRI to ``(Blog, address)`` tuple
    """
    resources = {}
    for address in [common.public_address()] + common.alt_addresses():
        host = urlparse(address).netloc
        for blog in Blog.all():
            resources[f'acct:{blog.name}@{host}'] = (blog, address)
            resources[blog.iri(address)] = (blog, address)

    return resources


def lookup(resource):
    """Finds the blog for a WebFinger ``resource`` query param.

    Accepts ``acct:blog@host``, ``blog@host``, ``@blog@host``, and blog IRIs,
    with or without trailing slash.

    Returns:
      (Blog, str) tuple, blog and address, or (None, None)
    """
    known = resources()

    candidates = [resource]
    if util.is_web(resource):
        candidates += [resource.rstrip('/'), resource.rstrip('/') + '/']
    elif not resource.startswith('acct:'):
        candidates.append('acct:' + resource.lstrip('@'))

    for candidate in candidates:
        if found := known.get(candidate):
            return found

    return None, None


@app.get('/.well-known/webfinger')
def webfinger():
    """Serves a blog's WebFinger profile as JRD.

    https://tools.ietf.org/html/rfc7033#section-4
    """
    resource = flask_util.get_required_param('resource').strip()
    blog, address = lookup(resource)
    if not blog:
        error(f'No blog found for {resource}', status=404)

    iri = blog.iri(address)
    acct = f'acct:{blog.name}@{urlparse(address).netloc}'
    data = {
        'subject': acct,
        'aliases': [acct, iri],
        'links': [{
            'rel': 'self',
            'type': as2.CONTENT_TYPE,
            'href': iri,
        }, {
            'rel': PROFILE_PAGE_REL,
            'type': 'text/html',
            'href': iri,
        }, {
            # remote follow
            # https://socialhub.activitypub.rocks/t/what-is-the-current-spec-for-remote-follow/2020/11
            'rel': SUBSCRIBE_LINK_REL,
            'template': f'{address}/activitypub/remote_follow/{blog.name}?uri={{uri}}',
        }],
    }

    logger.info(f'Returning WebFinger data for {resource}: {json_dumps(data)}')
    return data, {
        'Content-Type': CONTENT_TYPE_JRD,
        'Access-Control-Allow-Origin': '*',
    }


@app.get('/.well-known/host-meta')
def host_meta():
    """Renders and serves the ``/.well-known/host-meta`` XRD file.

    https://tools.ietf.org/html/rfc6415#section-3
    """
    return (render_template('host-meta.xrd', host_uri=request.host_url.rstrip('/')),
            {'Content-Type': CONTENT_TYPE_XRD})


def fetch(addr):
    """Fetches and returns an address's WebFinger data.

    On failure, flashes a message and returns None.

    Args:
      addr (str): a Webfinger-compatible address, eg ``@x@y``, ``acct:x@y``, or
        ``https://x/y``

    Returns:
      dict: fetched WebFinger data, or None on error
    """
    addr = addr.strip().strip('@').removeprefix('acct:')
    split = addr.split('@')
    if len(split) == 2 and split[0] and split[1]:
        addr_domain = split[1]
        resource = f'acct:{addr}'
    elif util.is_web(addr):
        addr_domain = urlparse(addr).netloc
        resource = addr
    else:
        flash('Enter a fediverse address in @user@domain.social format')
        return None

    try:
        resp = util.requests_get(f'https://{addr_domain}/.well-known/webfinger',
                                 params={'resource': resource},
                                 headers=common.request_headers(),
                                 timeout=common.HTTP_TIMEOUT)
    except requests.RequestException as e:
        logger.info(f"Couldn't fetch WebFinger for {addr}: error={e}")
        flash(f"Couldn't connect to {addr_domain}")
        return None

    if not resp.ok:
        flash(f'WebFinger on {addr_domain} returned HTTP {resp.status_code}')
        return None

    try:
        data = resp.json()
    except ValueError as e:
        logger.warning(f'Got {e}', exc_info=True)
        flash(f'WebFinger on {addr_domain} returned non-JSON')
        return None

    if not isinstance(data, dict):
        flash(f'WebFinger on {addr_domain} returned non-JSON')
        return None

    logger.info(f'Got: {json_dumps(data, indent=2)}')
    return data


def fetch_actor_url(addr):
    """Fetches and returns a WebFinger address's ActivityPub actor URL.

    On failure, flashes a message and returns None.

    Args:
      addr (str): a Webfinger-compatible address, eg ``@x@y``, ``acct:x@y``, or
        ``https://x/y``

    Returns:
      str: ActivityPub actor URL, or None on error or not found
    """
    data = fetch(addr)
    if not data:
        return None

    for link in data.get('links', []):
        if not isinstance(link, dict):
            continue
        type = (link.get('type') or '').split(';')[0].strip()
        if link.get('rel') == 'self' and type in as2.CONTENT_TYPES:
            return link.get('href')
