"""Webmention: receiving, verifying, sending, and moderating.

https://www.w3.org/TR/webmention/

Received mentions move through these statuses:

* ``new``: just received, not verified yet
* ``renew``: received again before it was verified
* ``verified``: the source links to the target
* ``approved``: verified and approved by the admin, or from one of our own posts

Mentions that fail verification are deleted.
"""
import logging
import threading
from urllib.parse import urljoin, urlparse

import cachetools
from flask import redirect, render_template, request
from webutil import flask_util, util, webmention
import requests
from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError

import common
from common import error
from flask_app import app
import microformats
from models import Mention, Session
import notifications
import taskqueue

logger = logging.getLogger(__name__)

QUEUE = 'wm'

NEW = 'new'
RENEW = 'renew'
VERIFIED = 'verified'
APPROVED = 'approved'

MAX_BYTES = 1000 * 1000
MAX_CONTENT_LENGTH = 500
MAX_TITLE_LENGTH = 60
SOURCE_TIMEOUT = 10  # seconds

# maps target URL to discovered webmention endpoint, or None
_endpoints = cachetools.TTLCache(maxsize=1000, ttl=60 * 60)


@app.post('/webmention')
def receive():
    """Webmention endpoint. Queues the mention for verification."""
    if (request.content_length or 0) > MAX_BYTES:
        error('Request body too large', status=413)

    if request.mimetype != 'application/x-www-form-urlencoded':
        error('Content type must be application/x-www-form-urlencoded')

    source = request.form.get('source', '').strip()
    target = request.form.get('target', '').strip()
    for url in source, target:
        if not util.is_web(url) or not urlparse(url).netloc:
            error(f'{url!r} is not an absolute URL')

    if not common.is_local_url(target):
        error(f'Target {target} is not on this site')

    queue_mention(source, common.normalize_local_url(target))
    return 'Webmention accepted', 202


def queue_mention(source, target):
    """Stores a received mention as ``new`` or ``renew`` and queues verification.

    Args:
      source (str)
      target (str)
    """
    source = common.unescaped_path(source)
    target = common.unescaped_path(target)
    now = int(util.now().timestamp())

    try:
        _store_received(source, target, now)
    except IntegrityError:
        # inserted concurrently, store again as an update
        _store_received(source, target, now)

    taskqueue.enqueue(QUEUE, {'type': 'verify', 'source': source, 'target': target})
    logger.info(f'Queued webmention from {source} target={target}')


def _store_received(source, target, now):
    with Session.begin() as session:
        if mention := session.scalar(Mention.select_for(source, target)):
            if mention.status in (NEW, RENEW):
                mention.status = RENEW
            mention.created = now
        else:
            session.add(Mention(source=source, target=target, created=now,
                                status=NEW, title='', content='', author=''))


def _delete(source, target, reason):
    logger.info(f'Deleting webmention from {source} target={target}: error={reason}')
    with Session.begin() as session:
        session.execute(delete(Mention).where(
            func.lower(Mention.source) == source.lower(),
            func.lower(Mention.target) == target.lower()))


def verify(source, target):
    """Verifies a received mention and stores its metadata, or deletes it.

    Args:
      source (str)
      target (str)

    Raises:
      taskqueue.Retry: if the source couldn't be fetched
    """
    mention = Mention.get(source, target)
    if not mention:
        logger.info(f'Webmention from {source} target={target} no longer exists')
        return
    old_status = mention.status

    # target, through our own app, logged in so drafts are visible
    resp, final_target = common.local_request(target)
    if resp.status_code != 200:
        _delete(source, target, f'target returned HTTP {resp.status_code}')
        return
    new_target = final_target if final_target != target else None

    # source
    if common.is_local_url(source):
        resp, final_source = common.local_request(source)
        status = resp.status_code
        body = resp.get_data(as_text=True)
    else:
        try:
            resp = util.requests_get(source, headers=common.request_headers(),
                                     timeout=SOURCE_TIMEOUT)
        except requests.RequestException as e:
            raise taskqueue.Retry(f"Couldn't fetch {source}: {e}")
        status = resp.status_code
        body = resp.text
        final_source = resp.url or source

    if status != 200:
        _delete(source, target, f'source returned HTTP {status}')
        return

    targets = {common.lower_unescaped_path(target)}
    if new_target:
        targets.add(common.lower_unescaped_path(new_target))
    links = common.links_from_html(body, final_source)
    if not any(common.lower_unescaped_path(link) in targets for link in links):
        _delete(source, target, 'source does not link to target')
        return

    title, content, author = microformats.parse(body, source, base_url=final_source)
    if not title and not content:
        if html_title := util.parse_html(body).title:
            title = html_title.get_text().strip()
    if title and content.startswith(title):
        title = ''

    new_status = (APPROVED if common.is_local_url(source) or old_status == APPROVED
                  else VERIFIED)
    with Session.begin() as session:
        mention = session.scalar(Mention.select_for(source, target))
        if not mention:
            mention = Mention(source=source, target=target,
                              created=int(util.now().timestamp()))
            session.add(mention)
        mention.title = common.truncate(title, MAX_TITLE_LENGTH)
        mention.content = common.truncate(content, MAX_CONTENT_LENGTH)
        mention.author = author
        mention.status = new_status

    logger.info(f'Verified webmention from {source} target={target}, now {new_status}')
    if old_status == NEW and new_status == VERIFIED:
        notifications.add(f'New webmention from {source} to {target}')


@cachetools.cached(_endpoints, lock=threading.Lock())
def discover(url):
    """Discovers a URL's webmention endpoint. Results are cached.

    Checks a HEAD request's ``Link`` header first, then falls back to
    :func:`oauth_dropins.webutil.webmention.discover`, which GETs the page and
    checks its ``Link`` header and HTML ``<link>``/``<a>`` tags.

    Returns:
      str: endpoint URL, or None

    Raises:
      requests.RequestException
    """
    resp = util.requests_head(url, headers=common.request_headers(),
                              allow_redirects=True, timeout=common.HTTP_TIMEOUT)
    if resp.ok:
        for link in resp.links.values():
            if 'webmention' in link.get('rel', '').split() and link.get('url'):
                endpoint = urljoin(resp.url or url, link['url'])
                logger.info(f'Webmention endpoint for {url} from HEAD: {endpoint}')
                return endpoint

    endpoint = webmention.discover(url, headers=common.request_headers(),
                                   timeout=common.HTTP_TIMEOUT).endpoint
    logger.info(f'Webmention endpoint for {url}: {endpoint}')
    return endpoint


def queue_send(source, target):
    """Queues sending a webmention to an external target."""
    taskqueue.enqueue(QUEUE, {'type': 'send', 'source': source, 'target': target})


def _failed(target, status, err):
    if status and status < 500:
        raise taskqueue.Drop(f'target={target} error={err}')
    raise taskqueue.Retry(f'target={target} error={err}')


def send(source, target):
    """Sends a webmention.

    Raises:
      taskqueue.Retry: on connection failures and 5xx responses
      taskqueue.Drop: on other error responses
    """
    try:
        endpoint = discover(target)
        if not endpoint:
            logger.info(f'No webmention endpoint for target={target}')
            return
        resp = webmention.send(endpoint, source, target,
                               headers=common.request_headers(),
                               timeout=common.HTTP_TIMEOUT)
    except requests.HTTPError as e:
        _failed(target, getattr(e.response, 'status_code', None), e)
    except requests.RequestException as e:
        raise taskqueue.Retry(f'target={target} error={e}')

    if not resp.ok:
        _failed(target, resp.status_code, f'HTTP {resp.status_code}')
    logger.info(f'Sent webmention from {source} target={target}, got {resp.status_code}')


def task(item):
    """Queue handler for :data:`QUEUE`."""
    data = taskqueue.payload(item)
    if data.get('type') == 'send':
        send(data['source'], data['target'])
    else:
        verify(data['source'], data['target'])


#
# admin
#
def _require_login():
    if not common.is_logged_in():
        error('Login required', status=401)


def _mention_id():
    try:
        return int(flask_util.get_required_param('mentionid'))
    except ValueError:
        error('mentionid must be an integer')


@app.get('/webmention')
def admin():
    _require_login()
    with Session() as session:
        mentions = session.scalars(select(Mention).order_by(
            Mention.created.desc(), Mention.id.desc())).all()
    return render_template('webmentions.html', mentions=mentions)


@app.post('/webmention/approve')
def approve():
    _require_login()
    id = _mention_id()
    with Session.begin() as session:
        if not (mention := session.get(Mention, id)):
            error(f'No webmention {id}', status=404)
        mention.status = APPROVED
    logger.info(f'Approved webmention {id}')
    return redirect('/webmention')


@app.post('/webmention/delete')
def delete_mention():
    _require_login()
    id = _mention_id()
    with Session.begin() as session:
        session.execute(delete(Mention).where(Mention.id == id))
    logger.info(f'Deleted webmention {id}')
    return redirect('/webmention')
