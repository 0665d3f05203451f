"""ActivityPub: inbox, signed delivery, remote actors, and remote follow.

* https://www.w3.org/TR/activitypub/
* https://swicg.github.io/activitypub-http-signature/
* https://docs.joinmastodon.org/spec/security/#http
"""
from base64 import b64encode
from collections import namedtuple
from hashlib import sha256
import logging
import secrets
import threading
from urllib.parse import quote, urljoin, urlparse

import cachetools
from flask import redirect, render_template, request, session
from granary import as2
from httpsig import HeaderSigner, HeaderVerifier
from httpsig.utils import parse_signature_header
from webutil import flask_util, util
from webutil.util import fragmentless, json_dumps, json_loads
import requests

import common
from common import error
import federation
from flask_app import app
import keys
from models import Blog, Follower
import taskqueue
import webfinger

logger = logging.getLogger(__name__)

QUEUE = 'ap_send'

# https://datatracker.ietf.org/doc/html/draft-cavage-http-signatures-12#section-2.3
HTTP_SIG_HEADERS = ('(request-target)', 'date', 'host', 'digest')
GET_SIG_HEADERS = ('(request-target)', 'date', 'host')
REQUIRED_SIG_HEADERS = ('(request-target)', 'digest')

ACCEPT = f'{as2.CONTENT_TYPE}, {as2.CONTENT_TYPE_LD_PROFILE}'
ACTOR_CONTENT_TYPES = (as2.CONTENT_TYPE, as2.CONTENT_TYPE_LD, 'application/json')
ACTOR_TYPES = ('Application', 'Group', 'Organization', 'Person', 'Service')

SUCCESS_STATUSES = (200, 201, 202, 204)
GONE_STATUSES = (404, 410)
# a 4xx that isn't 404 or 410 gets this many delivery attempts
CLIENT_ERROR_ATTEMPTS = 3

INBOX_MAX_BYTES = 10 * 1000 * 1000
REMOTE_FOLLOW_MAX_BYTES = 100 * 1000
MAX_REDIRECTS = 10

SUBSCRIBE_LINK_REL = 'http://ostatus.org/schema/1.0/subscribe'

# failed fetches, maps object id to ActorError
NEGATIVE_CACHE_TTL = 10 * 60  # seconds
_actor_failures = cachetools.TTLCache(maxsize=1000, ttl=NEGATIVE_CACHE_TTL)
_actor_failures_lock = threading.Lock()


class ActorError(Exception):
    """Fetching or parsing a remote actor or object failed.

    Attributes:
      status (int): HTTP status code, or None for connection and parse errors
    """
    def __init__(self, msg, status=None):
        super().__init__(msg)
        self.status = status


class Actor(namedtuple('Actor', (
        'id',
        'type',
        'inbox',
        'shared_inbox',
        'public_key_id',
        'public_key_pem',
        'preferred_username',
        'moved_to',
        'name',
        'url',
))):
    """A remote ActivityPub actor, parsed from its AS2 document."""

    @property
    def delivery_inbox(self):
        """The shared inbox if there is one, otherwise the actor's own inbox."""
        return self.shared_inbox or self.inbox

    @property
    def is_actor(self):
        return self.type in ACTOR_TYPES

    @property
    def username(self):
        """Webfinger-style ``@user@host``, or the actor id if it has no username."""
        if self.preferred_username:
            return f'@{self.preferred_username}@{urlparse(self.id).netloc}'
        return self.id

    @classmethod
    def from_as2(cls, data, id=None):
        """Parses an AS2 actor. Fields that aren't the expected types are ignored.

        Raises:
          ActorError: if ``data`` isn't a JSON object
        """
        if not isinstance(data, dict):
            raise ActorError(f'{id} is not a JSON object')

        def str_field(obj, field):
            val = obj.get(field) if isinstance(obj, dict) else None
            return val if isinstance(val, str) and val else None

        key = data.get('publicKey')
        if isinstance(key, list):
            key = key[0] if key else None

        return cls(
            id=str_field(data, 'id') or id,
            type=str_field(data, 'type'),
            inbox=str_field(data, 'inbox'),
            shared_inbox=(str_field(data.get('endpoints'), 'sharedInbox')
                          or str_field(data, 'sharedInbox')),
            public_key_id=str_field(key, 'id'),
            public_key_pem=str_field(key, 'publicKeyPem'),
            preferred_username=str_field(data, 'preferredUsername'),
            moved_to=str_field(data, 'movedTo'),
            name=str_field(data, 'name'),
            url=str_field(data, 'url'),
        )


def object_id(val):
    """Returns the id of an AS2 field that's either a string or an object."""
    if isinstance(val, str):
        return val
    elif isinstance(val, dict) and isinstance(val.get('id'), str):
        return val['id']


def http_date():
    return util.now().strftime('%a, %d %b %Y %H:%M:%S GMT')


def digest(body):
    """Returns the ``Digest`` header value for a body, bytes."""
    return f'SHA-256={b64encode(sha256(body).digest()).decode()}'


def path_query(url):
    """The ``(request-target)`` path for a URL, including query."""
    parsed = urlparse(url)
    return (parsed.path or '/') + (f'?{parsed.query}' if parsed.query else '')


def _sign(headers, key_id, method, url, sig_headers):
    signer = HeaderSigner(key_id, keys.private_pem(), algorithm='rsa-sha256',
                          sign_header='signature', headers=sig_headers)
    return signer.sign(headers, method=method, path=path_query(url))['Signature']


def signed_get(url, blog, _redirect_count=0, **kwargs):
    """GETs an AS2 document, signed as a blog, for authorized fetch servers.

    Redirects are followed manually so that each hop gets its own signature.

    Args:
      url (str)
      blog (models.Blog)
      kwargs: passed through to :func:`oauth_dropins.webutil.util.requests_get`

    Returns:
      requests.Response:

    Raises:
      requests.TooManyRedirects
    """
    headers = common.request_headers(**{
        'Date': http_date(),
        'Host': urlparse(url).netloc,
        'Accept': ACCEPT,
    })
    headers['Signature'] = _sign(headers, blog.key_id(), 'GET', url,
                                 GET_SIG_HEADERS)
    kwargs.setdefault('timeout', common.HTTP_TIMEOUT)
    resp = util.requests_get(url, headers=headers, allow_redirects=False, **kwargs)

    location = resp.headers.get('Location')
    if resp.status_code in common.REDIRECT_STATUSES and location:
        if _redirect_count >= MAX_REDIRECTS:
            raise requests.TooManyRedirects(f'Too many redirects for {url}',
                                            response=resp)
        return signed_get(urljoin(url, location), blog,
                          _redirect_count=_redirect_count + 1, **kwargs)

    return resp


def send(blog_iri, inbox, activity):
    """POSTs an activity to an inbox with an HTTP Signature.

    Args:
      blog_iri (str): actor sending the activity. Its key id is
        ``blog_iri#main-key``
      inbox (str): URL
      activity (dict): AS2 activity

    Returns:
      requests.Response:

    Raises:
      requests.RequestException: on connection failures
    """
    body = json_dumps(activity).encode()
    headers = common.request_headers(**{
        # required for HTTP Signature
        # https://tools.ietf.org/html/draft-cavage-http-signatures-07#section-2.1.3
        'Date': http_date(),
        # required by Mastodon
        # https://github.com/tootsuite/mastodon/pull/14556#issuecomment-674077648
        'Host': urlparse(inbox).netloc,
        'Content-Type': as2.CONTENT_TYPE,
        'Digest': digest(body),
        'Accept': as2.CONTENT_TYPE,
    })
    headers['Signature'] = _sign(headers, f'{blog_iri}#main-key', 'POST', inbox,
                                 HTTP_SIG_HEADERS)

    logger.info(f'Sending {activity.get("type")} {activity.get("id")} to {inbox}')
    return util.requests_post(inbox, data=body, headers=headers,
                              allow_redirects=False, timeout=common.HTTP_TIMEOUT)


def queue_send_signed(blog_iri, inbox, activity, at=None):
    """Enqueues a signed delivery of ``activity`` to ``inbox``.

    Args:
      blog_iri (str)
      inbox (str)
      activity (dict)
      at (datetime.datetime): optional, when to send
    """
    return taskqueue.enqueue(QUEUE, {
        'blog_iri': blog_iri,
        'inbox': inbox,
        'activity': activity,
    }, at=at)


def send_task(item):
    """Queue handler for :data:`QUEUE`. Sends one activity to one inbox."""
    data = taskqueue.payload(item)
    blog_iri = data['blog_iri']
    inbox = data['inbox']

    try:
        resp = send(blog_iri, inbox, data['activity'])
    except requests.RequestException as e:
        raise taskqueue.Retry(f'actor={blog_iri} target={inbox} error={e}')

    status = resp.status_code
    if status in SUCCESS_STATUSES:
        logger.info(f'Delivered to {inbox}, got {status}')
        return

    if status in GONE_STATUSES:
        logger.info(f'Inbox {inbox} returned {status}, removing its followers')
        Follower.remove_by_inbox(inbox)
        return

    msg = f'actor={blog_iri} target={inbox} error=HTTP {status}'
    if 400 <= status < 500:
        raise taskqueue.Retry(msg, max_attempts=CLIENT_ERROR_ATTEMPTS)
    raise taskqueue.Retry(msg)


def get_object(id, blog=None):
    """Fetches a remote AS2 object, eg an actor or a note.

    Failed fetches are cached for :data:`NEGATIVE_CACHE_TTL`.

    Args:
      id (str): object id. Any fragment is removed.
      blog (models.Blog): optional, signs the fetch as this blog

    Returns:
      dict: AS2 object

    Raises:
      ActorError: with ``status`` set if the server returned an HTTP error,
        otherwise with ``status`` None
    """
    id = fragmentless(id)
    with _actor_failures_lock:
        cached = _actor_failures.get(id)
    if cached:
        logger.info(f'Using cached failure for {id}: {cached}')
        raise cached

    try:
        if blog:
            resp = signed_get(id, blog)
        else:
            resp = util.requests_get(id, headers=common.request_headers(Accept=ACCEPT),
                                     timeout=common.HTTP_TIMEOUT)
    except requests.RequestException as e:
        raise ActorError(f"Couldn't fetch {id}: {e}")

    if not 200 <= resp.status_code < 300:
        err = ActorError(f'Fetching {id} returned HTTP {resp.status_code}',
                         status=resp.status_code)
        with _actor_failures_lock:
            _actor_failures[id] = err
        raise err

    type = common.content_type(resp)
    if type not in ACTOR_CONTENT_TYPES:
        raise ActorError(f'{id} returned unexpected content type {type}')

    try:
        data = json_loads(resp.text)
    except ValueError as e:
        raise ActorError(f"Couldn't parse {id}: {e}")

    if not isinstance(data, dict):
        raise ActorError(f'{id} is not a JSON object')
    return data


def get_actor(id, blog=None):
    """Fetches and parses a remote actor.

    Args:
      id (str): actor id or key id. Any fragment is removed.
      blog (models.Blog): optional, signs the fetch as this blog

    Returns:
      Actor:

    Raises:
      ActorError
    """
    id = fragmentless(id)
    return Actor.from_as2(get_object(id, blog=blog), id=id)


def verify_signature(blog):
    """Verifies the current request's HTTP Signature.

    Aborts with 401 if the signature is missing or invalid. If the signer's
    actor is gone, removes it as a follower and returns None.

    https://swicg.github.io/activitypub-http-signature/

    Args:
      blog (models.Blog): the blog whose inbox received the request

    Returns:
      Actor: the signing actor, or None if it's gone
    """
    headers = dict(request.headers)  # copy so we can modify below
    sig = headers.get('Signature')
    if not sig:
        error('No HTTP Signature', status=401)

    # parse_signature_header lower-cases all keys
    sig_fields = parse_signature_header(sig)
    key_id = fragmentless(sig_fields.get('keyid') or '')
    if not key_id:
        error('sig missing keyId', status=401)

    covered = (sig_fields.get('headers') or 'date').lower().split()
    for header in REQUIRED_SIG_HEADERS:
        if header not in covered:
            error(f'sig must cover {header}', status=401)

    # assume hs2019 is rsa-sha256, like Mastodon does
    # https://github.com/mastodon/mastodon/pull/14556
    if sig_fields.get('algorithm') == 'hs2019':
        headers['Signature'] = sig.replace('algorithm="hs2019"',
                                           'algorithm="rsa-sha256"')

    digest_header = headers.get('Digest') or ''
    if not digest_header:
        error('Missing Digest', status=401)
    expected = digest(request.get_data()).removeprefix('SHA-256=')
    if digest_header.removeprefix('SHA-256=').removeprefix('sha-256=') != expected:
        error('Invalid Digest', status=401)

    try:
        actor = get_actor(key_id, blog=blog)
    except ActorError as e:
        if e.status in GONE_STATUSES:
            logger.info(f'Signer is gone, removing follower blog={blog.name} actor={key_id}')
            Follower.remove(blog.name, key_id)
            return None
        error(f"Couldn't load {key_id} to verify signature: {e}", status=401)

    if not actor.public_key_pem:
        error(f'No public key for {key_id}', status=401)

    # can't use request.full_path because it includes a trailing ? even if
    # it wasn't in the request. https://github.com/pallets/flask/issues/2867
    path = request.url.removeprefix(request.host_url.rstrip('/'))
    try:
        verified = HeaderVerifier(headers, actor.public_key_pem,
                                  required_headers=list(REQUIRED_SIG_HEADERS),
                                  method=request.method,
                                  path=path,
                                  sign_header='signature',
                                  ).verify()
    except Exception as e:
        error(f'sig verification failed: {e}', status=401)

    if not verified:
        error('sig failed', status=401)

    logger.debug(f'sig ok for {key_id}')
    return actor


@app.post('/activitypub/inbox/<blog_name>')
def inbox(blog_name):
    """Accepts POSTs to a blog's ActivityPub inbox."""
    blog = Blog.get(blog_name)
    if not blog:
        error(f'No blog {blog_name}', status=404)

    if (request.content_length or 0) > INBOX_MAX_BYTES:
        error('Request body too large', status=413)

    body = request.get_data(as_text=True)
    signer = verify_signature(blog)
    if not signer:
        return 'OK'

    if not body:
        error('Empty body')

    try:
        activity = json_loads(body)
    except ValueError as e:
        error(f"Couldn't parse body as JSON: {e}")

    if not isinstance(activity, dict) or not isinstance(activity.get('type'), str):
        error('Activity must be a JSON object with a type')

    actor_id = object_id(activity.get('actor'))
    if not actor_id:
        error('Activity has no actor')
    elif actor_id != signer.id:
        error(f'Activity actor {actor_id} does not match signer {signer.id}',
              status=403)

    logger.info(f'Received {activity["type"]} blog={blog.name} actor={actor_id}')
    federation.accept_inbox(blog, activity, signer)
    return 'OK'


@app.get('/activitypub/followers/<blog_name>')
def followers(blog_name):
    """HTML list of a blog's followers. Requires login."""
    blog = Blog.get(blog_name)
    if not blog:
        error(f'No blog {blog_name}', status=404)
    if not common.is_logged_in():
        error('Login required', status=401)

    return render_template('followers.html', blog=blog,
                           followers=Follower.for_blog(blog.name))


@app.route('/activitypub/remote_follow/<blog_name>', methods=['GET', 'POST'])
def remote_follow(blog_name):
    """OStatus remote follow: redirects to the user's instance's follow page.

    https://socialhub.activitypub.rocks/t/what-is-the-current-spec-for-remote-follow/2020
    """
    blog = Blog.get(blog_name)
    if not blog:
        error(f'No blog {blog_name}', status=404)

    if request.method == 'GET':
        token = session.setdefault('csrf_token', secrets.token_urlsafe(16))
        return render_template('remote_follow.html', blog=blog, csrf_token=token,
                               user=request.args.get('user', ''))

    if (request.content_length or 0) > REMOTE_FOLLOW_MAX_BYTES:
        error('Request body too large', status=413)

    token = session.get('csrf_token')
    if not token or request.form.get('csrf_token') != token:
        error('Invalid CSRF token')

    user = flask_util.get_required_param('user').strip()
    template = None
    if data := webfinger.fetch(user):
        for link in data.get('links', []):
            if (isinstance(link, dict) and link.get('rel') == SUBSCRIBE_LINK_REL
                    and isinstance(link.get('template'), str)):
                template = link['template']
                break
        else:
            flask_util.flash(f"{user}'s instance doesn't support remote follow")

    if not template:
        return render_template('remote_follow.html', blog=blog, csrf_token=token,
                               user=user), 400

    url = template.replace('{uri}', quote(blog.iri(), safe=''))
    logger.info(f'Remote follow for blog={blog.name} actor={user}, redirecting to {url}')
    return redirect(url)
