"""Read interface over the post store, and post lifecycle hooks.

Authoring posts, eg via Micropub or an editor, lives elsewhere. It calls
:func:`create_post`, :func:`update_post`, :func:`delete_post`, and
:func:`undelete_post`, which store the post and then run the registered hooks,
eg federation and outgoing webmentions.
"""
import logging

from sqlalchemy import func, select

import common
from models import Post, Session

logger = logging.getLogger(__name__)

# each is a list of callables that take a Post
create_hooks = []
update_hooks = []
delete_hooks = []
undelete_hooks = []


def get_post(path):
    """Returns the :class:`models.Post` at ``path``, or None."""
    with Session() as session:
        return session.get(Post, path)


def blog_posts(blog_name, public_only=True):
    """Returns a blog's posts, newest first."""
    query = select(Post).where(Post.blog == blog_name)
    if public_only:
        query = query.where(Post.status == 'published',
                            Post.visibility == 'public')
    with Session() as session:
        return session.scalars(query.order_by(Post.published.desc())).all()


def count_published():
    with Session() as session:
        return session.scalar(select(func.count()).select_from(Post)
                              .where(Post.status == 'published'))


def url(post):
    return common.public_address() + post.path


def rendered_html(post):
    """The post's rendered HTML content."""
    return post.content or ''


def replace_parameter(post, name, values):
    """Replaces a post parameter's stored values without running any hooks.

    Args:
      post (models.Post)
      name (str)
      values (sequence of str): empty to remove the parameter

    Returns:
      models.Post: the stored post
    """
    with Session.begin() as session:
        stored = session.get(Post, post.path)
        if not stored:
            return post
        params = stored.parameters
        params.pop(name, None)
        if values:
            params[name] = list(values)
        stored.set_parameters(params)

    return get_post(post.path)


def is_visible(post):
    """Whether a post can be served without login."""
    return post.status == 'published' and post.visibility in ('public', 'unlisted')


def _run_hooks(hooks, post):
    for hook in hooks:
        logger.debug(f'Running {hook.__name__} for {post.path}')
        hook(post)


def _save(post):
    with Session.begin() as session:
        session.merge(post)
    return get_post(post.path)


def create_post(post):
    post = _save(post)
    logger.info(f'Created {post}')
    _run_hooks(create_hooks, post)
    return post


def update_post(post):
    post = _save(post)
    logger.info(f'Updated {post}')
    _run_hooks(update_hooks, post)
    return post


def delete_post(post):
    """Runs the delete hooks, then deletes the post.

    The hooks run first so that they can still render it.
    """
    _run_hooks(delete_hooks, post)
    with Session.begin() as session:
        if stored := session.get(Post, post.path):
            session.delete(stored)
    logger.info(f'Deleted {post}')


def undelete_post(post):
    post = _save(post)
    logger.info(f'Undeleted {post}')
    _run_hooks(undelete_hooks, post)
    return post
