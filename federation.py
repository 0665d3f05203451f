"""Federation: turns post lifecycle events into outbound activities, and
inbound activities into followers, mentions, and notifications.

Outbound activities are queued per inbox on :data:`activitypub.QUEUE` and
delivered by its worker. The only inline HTTP requests here resolve remote
actors and objects: the ones a post mentions or replies to, and followers in
the maintenance commands.
"""
from collections import namedtuple
from datetime import timedelta, timezone
import logging
import uuid

from granary import as2
from webutil import util

import activitypub
import activitystreams
import common
from common import AS2_CONTEXT, error
from models import Blog, Follower
import notifications
import posts
import webfinger
import webmention

logger = logging.getLogger(__name__)

# replies are announced this long after they're created, so that the reply
# itself arrives first
ANNOUNCE_DELAY = timedelta(seconds=30)

# post parameters whose values are linked to with webmentions
LINK_PARAMETERS = ('replylink', 'likelink', 'bookmarklink')


def _activity(type, id, blog, **fields):
    return util.trim_nulls({
        '@context': [AS2_CONTEXT],
        'type': type,
        'id': id,
        'actor': blog.iri(),
        **fields,
    })


def _without_context(obj):
    obj = dict(obj)
    obj.pop('@context', None)
    return obj


def _blog_for(post):
    blog = Blog.get(post.blog)
    if not blog:
        logger.warning(f'No blog {post.blog} for {post}, not federating')
    return blog


def send_to_all_followers(blog, activity, at=None, mentions=()):
    """Queues an activity for delivery to each of a blog's follower inboxes.

    Args:
      blog (models.Blog)
      activity (dict)
      at (datetime.datetime): optional, when to deliver
      mentions (sequence of str): actor ids that also get the activity in
        their own inboxes. Actors that can't be fetched are skipped.

    Returns:
      int: number of inboxes
    """
    inboxes = list(Follower.inboxes(blog.name))
    for id in mentions:
        try:
            inbox = activitypub.get_actor(id, blog=blog).inbox
        except activitypub.ActorError as e:
            logger.info(f"Couldn't fetch mentioned actor={id} error={e}")
            continue
        if inbox and inbox not in inboxes:
            inboxes.append(inbox)

    for inbox in inboxes:
        activitypub.queue_send_signed(blog.iri(), inbox, activity, at=at)

    logger.info(f'Queued {activity.get("type")} {activity.get("id")} blog={blog.name} to {len(inboxes)} inboxes')
    return len(inboxes)


def check_mentions(post, blog):
    """Stores the ids of the remote actors that a post's links point to.

    Returns:
      models.Post: with :data:`activitystreams.MENTIONS_PARAM` updated
    """
    url = posts.url(post)
    mentions = []
    for link in common.links_from_html(posts.rendered_html(post), url):
        if not util.is_web(link) or common.is_local_url(link):
            continue
        try:
            actor = activitypub.get_actor(link, blog=blog)
        except activitypub.ActorError as e:
            logger.debug(f'{link} is not an actor: {e}')
            continue
        if actor.is_actor and actor.id not in mentions:
            mentions.append(actor.id)

    return posts.replace_parameter(post, activitystreams.MENTIONS_PARAM, mentions)


def check_reply(post, blog):
    """Stores the AS2 object a post replies to, and its author, if any.

    Returns:
      models.Post: with :data:`activitystreams.REPLY_OBJECT_PARAM` and
      :data:`activitystreams.REPLY_ACTOR_PARAM` updated
    """
    reply_object = reply_actor = None
    link = post.parameter('replylink')
    if util.is_web(link) and not common.is_local_url(link):
        try:
            obj = activitypub.get_object(link, blog=blog)
        except activitypub.ActorError as e:
            logger.debug(f'{link} is not an AS2 object: {e}')
        else:
            reply_object = activitypub.object_id(obj)
            author = obj.get('attributedTo')
            if isinstance(author, list):
                author = author[0] if author else None
            reply_actor = activitypub.object_id(author)

    post = posts.replace_parameter(post, activitystreams.REPLY_OBJECT_PARAM,
                                   [reply_object] if reply_object else [])
    return posts.replace_parameter(post, activitystreams.REPLY_ACTOR_PARAM,
                                   [reply_actor] if reply_actor else [])


def publish_post(post):
    """Sends a ``Create`` for a newly published public post.

    Mentioned actors and the author of the post it replies to get it too.
    Replies are also announced to followers, :data:`ANNOUNCE_DELAY` later.
    """
    if not post.is_public():
        return
    blog = _blog_for(post)
    if not blog:
        return

    post = check_reply(check_mentions(post, blog), blog)
    note = activitystreams.post_to_note(post)
    create = _activity('Create', note['id'], blog,
                       to=[as2.PUBLIC_AUDIENCE],
                       published=activitystreams.rfc3339(post.published),
                       object=_without_context(note))
    send_to_all_followers(blog, create,
                          mentions=activitystreams.mentioned_actors(post))

    if note.get('inReplyTo'):
        announce_reply(post)


def announce_reply(post):
    """Sends an ``Announce`` of a reply post, :data:`ANNOUNCE_DELAY` from now."""
    blog = _blog_for(post)
    if not blog:
        return

    url = posts.url(post)
    announce = _activity('Announce', f'{url}#announce', blog,
                         to=[as2.PUBLIC_AUDIENCE],
                         published=activitystreams.rfc3339(post.published),
                         object=url)
    send_to_all_followers(blog, announce, at=util.now() + ANNOUNCE_DELAY)


def update_post(post):
    """Sends an ``Update`` with the post's current Note/Article."""
    if not post.is_public():
        return
    blog = _blog_for(post)
    if not blog:
        return

    updated = post.updated or post.published
    if updated:
        ts = int(updated.replace(tzinfo=updated.tzinfo or timezone.utc).timestamp())
    else:
        ts = int(util.now().timestamp())

    post = check_reply(check_mentions(post, blog), blog)
    note = activitystreams.post_to_note(post)
    update = _activity('Update', f'{note["id"]}#update-{ts}', blog,
                       to=[as2.PUBLIC_AUDIENCE],
                       published=activitystreams.rfc3339(post.published),
                       object=_without_context(note))
    send_to_all_followers(blog, update,
                          mentions=activitystreams.mentioned_actors(post))


def delete_post(post):
    """Sends a ``Delete`` with a ``Tombstone`` for a post that was public."""
    if not post.is_public():
        return
    blog = _blog_for(post)
    if not blog:
        return

    url = posts.url(post)
    delete = _activity('Delete', f'{url}#delete', blog,
                       to=[as2.PUBLIC_AUDIENCE],
                       published=activitystreams.rfc3339(post.published),
                       object={'id': url, 'type': 'Tombstone'})
    send_to_all_followers(blog, delete,
                          mentions=activitystreams.mentioned_actors(post))


def undelete_post(post):
    """Re-publishes a restored post with a new ``Create``.

    ``Undo`` of ``Delete`` isn't widely supported, eg by Mastodon.
    https://github.com/mastodon/mastodon/issues/17553
    """
    publish_post(post)


def send_webmentions_for_post(post, html=None):
    """Queues webmentions to every link in a post.

    Links on this site are queued for verification directly. External links
    are queued for sending.

    Args:
      post (models.Post)
      html (str): optional, rendered HTML, defaults to the stored content
    """
    url = posts.url(post)
    if html is None:
        html = posts.rendered_html(post)

    links = common.links_from_html(html, url)
    for param in LINK_PARAMETERS:
        if (link := post.parameter(param)) and util.is_web(link) and link not in links:
            links.append(link)

    for link in links:
        if util.fragmentless(link) == url:
            continue
        if common.is_local_url(link):
            webmention.queue_mention(url, common.normalize_local_url(link))
        else:
            webmention.queue_send(url, link)


def _send_webmentions_if_public(post):
    if post.is_public():
        send_webmentions_for_post(post)


posts.create_hooks += [_send_webmentions_if_public, publish_post]
posts.update_hooks += [_send_webmentions_if_public, update_post]
posts.delete_hooks += [_send_webmentions_if_public, delete_post]
posts.undelete_hooks += [undelete_post]


def send_profile_updates():
    """Sends an ``Update`` of each blog's actor to its followers."""
    for blog in Blog.all():
        person = activitystreams.blog_to_person(blog)
        update = _activity('Update', f'{blog.iri()}#{uuid.uuid4()}', blog,
                           to=[as2.PUBLIC_AUDIENCE],
                           published=activitystreams.rfc3339(util.now()),
                           object=_without_context(person))
        send_to_all_followers(blog, update)


#
# inbound
#
def accept_inbox(blog, activity, signer):
    """Handles an inbound activity that's already been authenticated.

    Args:
      blog (models.Blog): the blog whose inbox received it
      activity (dict): AS2 activity. Its actor is ``signer``.
      signer (activitypub.Actor)
    """
    type = activity.get('type')
    handler = {
        'Follow': _accept_follow,
        'Undo': _accept_undo,
        'Create': _accept_create,
        'Update': _accept_create,
        'Block': _accept_block,
        'Like': _accept_like_or_announce,
        'Announce': _accept_like_or_announce,
    }.get(type)

    if not handler:
        logger.info(f'Ignoring {type} blog={blog.name} actor={signer.id}')
        return

    handler(blog, activity, signer)


def _accept_follow(blog, follow, follower):
    if activitypub.object_id(follow.get('object')) == follower.id:
        error("You can't follow yourself")

    inbox = follower.delivery_inbox
    if not inbox:
        error(f'{follower.id} has no inbox')

    Follower.upsert(blog.name, follower.id, inbox, username=follower.username)

    blog_iri = blog.iri()
    accept = _activity('Accept', f'{blog_iri}#{uuid.uuid4()}', blog,
                       to=[follower.id],
                       object=_without_context(follow))
    activitypub.queue_send_signed(blog_iri, inbox, accept)

    notifications.add(f'{follower.username} ({follower.url or follower.id}) started following {blog_iri}')


def _accept_undo(blog, undo, actor):
    inner = undo.get('object')
    if not isinstance(inner, dict) or inner.get('type') != 'Follow':
        logger.info(f'Ignoring Undo of {inner} blog={blog.name} actor={actor.id}')
        return

    if activitypub.object_id(inner.get('actor')) != actor.id:
        logger.info(f"Ignoring Undo of someone else's Follow blog={blog.name} actor={actor.id}")
        return

    if Follower.remove(blog.name, actor.id):
        notifications.add(f'{actor.username} unfollowed {blog.iri()}')


def _accept_create(blog, activity, actor):
    obj = activity.get('object')
    if not isinstance(obj, dict):
        return

    id = activitypub.object_id(obj)
    in_reply_to = activitypub.object_id(obj.get('inReplyTo'))
    if id and in_reply_to and common.is_local_url(in_reply_to):
        webmention.queue_mention(id, common.normalize_local_url(in_reply_to))
        return

    source = obj.get('url') if isinstance(obj.get('url'), str) else id
    content = obj.get('content')
    if not source or not isinstance(content, str):
        return

    for link in common.links_from_html(content, source):
        if common.is_local_url(link):
            webmention.queue_mention(source, common.normalize_local_url(link))


def _accept_block(blog, block, actor):
    blocked = activitypub.object_id(block.get('object'))
    iris = {blog.iri(address) for address in common.local_addresses()}
    if blocked == actor.id or blocked in iris:
        logger.info(f'Follower blocked us blog={blog.name} actor={actor.id}')
        Follower.remove(blog.name, actor.id)


def _accept_like_or_announce(blog, activity, actor):
    target = activitypub.object_id(activity.get('object'))
    if target and common.is_local_url(target):
        verb = 'liked' if activity['type'] == 'Like' else 'announced'
        notifications.add(f'{actor.id} {verb} {target}')


#
# follower maintenance
#
def refetch_followers(blog):
    """Re-resolves a blog's followers and updates their inboxes and usernames.

    Followers whose actors are gone are removed.

    Returns:
      int: number of followers updated
    """
    updated = 0
    for follower in Follower.for_blog(blog.name):
        try:
            actor = activitypub.get_actor(follower.follower, blog=blog)
        except activitypub.ActorError as e:
            if e.status in activitypub.GONE_STATUSES:
                Follower.remove(blog.name, follower.follower)
            else:
                logger.warning(f"Couldn't refetch blog={blog.name} actor={follower.follower} error={e}")
            continue

        if inbox := actor.delivery_inbox:
            Follower.upsert(blog.name, follower.follower, inbox,
                            username=actor.username)
            updated += 1

    return updated


def add_follower(blog, addr):
    """Resolves an ``@user@host`` address or actor IRI and adds it as a follower.

    Returns:
      activitypub.Actor: the new follower, or None if it couldn't be resolved
    """
    id = addr if util.is_web(addr) else webfinger.fetch_actor_url(addr)
    if not id:
        logger.warning(f"Couldn't find actor for {addr}")
        return None

    try:
        actor = activitypub.get_actor(id, blog=blog)
    except activitypub.ActorError as e:
        logger.warning(f"Couldn't fetch blog={blog.name} actor={id} error={e}")
        return None

    if not actor.delivery_inbox:
        logger.warning(f'{actor.id} has no inbox')
        return None

    Follower.upsert(blog.name, actor.id, actor.delivery_inbox,
                    username=actor.username)
    return actor


FollowerCheck = namedtuple('FollowerCheck', ('id', 'status', 'moved_to', 'error'))


def check_followers(blog):
    """Fetches each of a blog's followers' actors and reports on them.

    Changes nothing.

    Returns:
      list of :class:`FollowerCheck`. ``status`` is ``ok``, ``gone`` if the
      actor couldn't be fetched, or ``moved`` if it has ``movedTo``.
    """
    checks = []
    for follower in Follower.for_blog(blog.name):
        try:
            actor = activitypub.get_actor(follower.follower, blog=blog)
        except activitypub.ActorError as e:
            checks.append(FollowerCheck(follower.follower, 'gone', None, str(e)))
            continue

        if actor.moved_to:
            checks.append(FollowerCheck(follower.follower, 'moved', actor.moved_to, None))
        else:
            checks.append(FollowerCheck(follower.follower, 'ok', None, None))

    return checks
