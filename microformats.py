"""Extracts title, content, and author from a page's microformats2 h-entry.

https://microformats.org/wiki/h-entry
"""
import logging

import mf2py

import common

logger = logging.getLogger(__name__)


def _h_entries(items):
    """Yields all h-entry items, depth first, including nested children."""
    for item in items:
        if 'h-entry' in item.get('type', []):
            yield item
        yield from _h_entries(item.get('children', []))


def _first(entry, prop):
    values = entry.get('properties', {}).get(prop) or []
    return values[0] if values else None


def _text(value):
    """The plain text of an mf2 property value: a string, embedded object, or e-* dict."""
    if isinstance(value, str):
        return value
    elif isinstance(value, dict):
        if 'html' in value:
            return common.html_text(value['html'])
        name = _first(value, 'name')
        if isinstance(name, str):
            return name
        value = value.get('value')
        if isinstance(value, str):
            return value
    return ''


def find_entry(parsed, url):
    """Returns the h-entry whose ``url`` matches, else the first h-entry, else None.

    Args:
      parsed (dict): mf2py output
      url (str): matched case insensitively
    """
    entries = list(_h_entries(parsed.get('items', [])))
    for entry in entries:
        urls = entry.get('properties', {}).get('url') or []
        if any(isinstance(u, str) and u.lower() == url.lower() for u in urls):
            return entry

    return entries[0] if entries else None


def parse(html, url, base_url=None):
    """Parses a webmention source page's h-entry.

    Args:
      html (str)
      url (str): the page's URL, used to find the right h-entry
      base_url (str): optional, for resolving relative URLs, defaults to ``url``

    Returns:
      (str title, str content, str author) tuple. Each may be empty.
      ``content`` is plain text with whitespace collapsed.
    """
    parsed = mf2py.parse(doc=html, url=base_url or url)
    entry = find_entry(parsed, url)
    if not entry:
        logger.debug(f'No h-entry in {url}')
        return '', '', ''

    title = _text(_first(entry, 'name')).strip()
    content = _text(_first(entry, 'content'))
    content = common.WHITESPACE_RE.sub(' ', content).strip()
    author = _text(_first(entry, 'author')).strip()
    return title, content, author
