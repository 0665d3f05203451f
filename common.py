"""Misc common utilities."""
import logging
import re
from urllib.parse import unquote, urljoin, urlparse, urlunparse

from flask import abort, current_app, make_response, request, session
from granary import as2
from webutil import util

logger = logging.getLogger(__name__)

APP_NAME = 'fedblog'
VERSION = '0.1.0'

CONTENT_TYPE_HTML = 'text/html; charset=utf-8'
AS2_CONTEXT = 'https://www.w3.org/ns/activitystreams'

# overall timeout for outbound HTTP requests, in seconds
HTTP_TIMEOUT = 5 * 60

# set by in-process requests, eg webmention verification, so that drafts and
# private posts are visible to them
LOGGED_IN_ENVIRON = 'fedblog.logged_in'

REDIRECT_STATUSES = (301, 302, 303, 307, 308)
MAX_LOCAL_REDIRECTS = 10

WHITESPACE_RE = re.compile(r'\s+')


def error(err, status=400, exc_info=None, **kwargs):
    """Like :func:`oauth_dropins.webutil.flask_util.error`, but wraps body in JSON."""
    msg = str(err)
    logger.info(f'Returning {status}: {msg}', exc_info=exc_info)
    abort(status, response=make_response({'error': msg}, status), **kwargs)


def public_address():
    return current_app.config['PUBLIC_ADDRESS'].rstrip('/')


def alt_addresses():
    return [addr.rstrip('/') for addr in current_app.config.get('ALT_ADDRESSES') or ()]


def local_addresses():
    """Returns our public, short, and alt addresses, in that order."""
    short = current_app.config.get('SHORT_PUBLIC_ADDRESS')
    return [public_address()] + ([short.rstrip('/')] if short else []) + alt_addresses()


def host_url(path_query=None):
    return urljoin(request.host_url, path_query)


def user_agent(address=None):
    return f'{APP_NAME} ({(address or public_address()).rstrip("/")})'


def _netloc(url):
    return urlparse(url).netloc.lower()


def is_local_url(url):
    """Returns True if ``url`` is on one of our addresses."""
    if not url or not util.is_web(url):
        return False
    netloc = _netloc(url)
    return any(netloc == _netloc(addr) for addr in local_addresses())


def is_alt_host(host):
    """Returns True if ``host`` (eg ``request.host``) is one of our alt domains."""
    host = host.lower()
    return any(host == _netloc(addr) for addr in alt_addresses())


def alt_address_for_host(host):
    host = host.lower()
    for addr in alt_addresses():
        if host == _netloc(addr):
            return addr


def normalize_local_url(url):
    """Rewrites URLs on an alt domain to our main public address.

    URLs on the main address and external URLs are returned unchanged.
    """
    parsed = urlparse(url)
    if not is_alt_host(parsed.netloc):
        return url

    main = urlparse(public_address())
    return urlunparse(parsed._replace(scheme=main.scheme, netloc=main.netloc))


def unescaped_path(url):
    """Percent-decodes a URL's path, leaving the rest alone."""
    parsed = urlparse(url)
    return urlunparse(parsed._replace(path=unquote(parsed.path)))


def lower_unescaped_path(url):
    return unescaped_path(url).lower()


def content_type(resp):
    """Returns a :class:`requests.Response`'s Content-Type, without charset suffix."""
    type = resp.headers.get('Content-Type')
    if type:
        return type.split(';')[0].strip().lower()


def as2_request_type():
    """If this request has conneg (ie the ``Accept`` header) for AS2, returns its type.

    Returns either ``application/activity+json`` or
    ``application/ld+json; profile="https://www.w3.org/ns/activitystreams"``,
    or None if the request prefers HTML or has no ``Accept`` header.

    https://www.w3.org/TR/activitypub/#retrieving-objects
    """
    as2_q = html_q = 0
    as2_type = None
    for value, q in request.accept_mimetypes:
        type = value.split(';')[0].strip().lower()
        if type in (as2.CONTENT_TYPE, as2.CONTENT_TYPE_LD):
            if q > as2_q:
                as2_q = q
                as2_type = type
        elif type in ('text/html', 'application/xhtml+xml', 'text/*', '*/*'):
            html_q = max(html_q, q)

    if as2_type and as2_q >= html_q:
        return (as2.CONTENT_TYPE if as2_type == as2.CONTENT_TYPE
                else as2.CONTENT_TYPE_LD_PROFILE)


def is_logged_in():
    """True for in-process requests and for sessions with the admin flag."""
    return bool(request.environ.get(LOGGED_IN_ENVIRON) or session.get('logged_in'))


def request_headers(**headers):
    """Returns headers for outbound requests, with keep-alives disabled.

    The ``User-Agent`` is set globally with :func:`util.set_user_agent`.
    """
    return {'Connection': 'close', **headers}


def local_request(url, method='GET', headers=None):
    """Makes an in-process, logged in request to one of our own URLs.

    Follows redirects as long as they stay on our addresses.

    Args:
      url (str)
      method (str)
      headers (dict)

    Returns:
      (werkzeug.test.TestResponse, str) tuple: final response and its URL
    """
    client = current_app.test_client()

    for _ in range(MAX_LOCAL_REDIRECTS + 1):
        parsed = urlparse(url)
        path = urlunparse(parsed._replace(scheme='', netloc='')) or '/'
        resp = client.open(path, method=method, headers=headers,
                           base_url=f'{parsed.scheme}://{parsed.netloc}',
                           environ_overrides={LOGGED_IN_ENVIRON: True})
        location = resp.headers.get('Location')
        if resp.status_code not in REDIRECT_STATUSES or not location:
            return resp, url

        next_url = urljoin(url, location)
        if not is_local_url(next_url):
            logger.info(f'{url} redirects off site to {next_url}')
            return resp, url
        url = next_url

    logger.info(f'Too many redirects for {url}')
    return resp, url


def html_text(html):
    """Returns the text of an HTML snippet, with whitespace collapsed."""
    if not html:
        return ''
    text = util.parse_html(html).get_text(' ')
    return WHITESPACE_RE.sub(' ', text).strip()


def links_from_html(html, base_url):
    """Returns all ``a[href]`` links in HTML, resolved against ``base_url``.

    Links are de-duped and kept in document order. Only http(s) links are
    returned.
    """
    if not html:
        return []

    links = []
    for a in util.parse_html(html).find_all('a', href=True):
        link = urljoin(base_url, a['href'].strip())
        if util.is_web(link) and link not in links:
            links.append(link)
    return links


def truncate(text, length):
    """Truncates text to at most ``length`` characters, ending with an ellipsis."""
    if len(text) <= length:
        return text
    return text[:length - 1].rstrip() + '…'
