"""Database model classes and the store operations on them.

Tables:

* ``activitypub_followers``: per-blog ActivityPub followers
* ``webmentions``: received webmentions
* ``queue``: durable work queue, see :mod:`taskqueue`
* ``persistent_cache``: small key/value store, eg the private key
* ``posts``, ``post_parameters``: the blog's posts, read by federation
* ``notifications``: admin notifications
"""
from datetime import datetime
import logging
from typing import List, Optional

from flask import current_app
from sqlalchemy import (
    DateTime,
    ForeignKey,
    Index,
    LargeBinary,
    String,
    Text,
    create_engine,
    delete,
    func,
    select,
)
from sqlalchemy.orm import (
    DeclarativeBase,
    Mapped,
    mapped_column,
    relationship,
    sessionmaker,
)
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)

engine = None
Session = sessionmaker(autoflush=False, expire_on_commit=False)


class Base(DeclarativeBase):
    pass


def init_db(url):
    """Creates the engine, binds :data:`Session` to it, and creates tables.

    Args:
      url (str): SQLAlchemy database URL
    """
    global engine

    kwargs = {}
    if url.startswith('sqlite'):
        # workers run in their own threads
        kwargs['connect_args'] = {'check_same_thread': False}
        if url in ('sqlite://', 'sqlite:///:memory:'):
            # one shared in-memory database
            kwargs['poolclass'] = StaticPool

    if engine is not None:
        engine.dispose()

    engine = create_engine(url, **kwargs)
    Session.configure(bind=engine)
    Base.metadata.create_all(engine)
    logger.info(f'Using database {engine.url!r}')


class Blog:
    """A configured blog. Read only.

    Attributes:
      name (str)
      path (str): path prefix, eg ``/`` or ``/de``
      title (str)
      description (str)
      lang (str)
      picture (str): profile picture URL, optional
    """
    def __init__(self, name, path='/', title='', description='', lang='en',
                 picture=None):
        self.name = name
        self.path = path or '/'
        self.title = title or name
        self.description = description or ''
        self.lang = lang
        self.picture = picture

    def __repr__(self):
        return f'Blog({self.name!r}, path={self.path!r})'

    def __eq__(self, other):
        return isinstance(other, Blog) and self.name == other.name

    def __hash__(self):
        return hash(self.name)

    @classmethod
    def get(cls, name):
        """Returns the :class:`Blog` with the given name, or None."""
        if data := current_app.config['BLOGS'].get(name):
            return cls(name, **data)

    @classmethod
    def all(cls):
        return [cls(name, **data)
                for name, data in current_app.config['BLOGS'].items()]

    @classmethod
    def for_path(cls, path):
        """Returns the blog whose home page is at ``path``, or None."""
        path = '/' + path.strip('/')
        for blog in cls.all():
            if '/' + blog.path.strip('/') == path:
                return blog

    def iri(self, address=None):
        """Returns this blog's ActivityPub actor id on an address.

        Args:
          address (str): base URL, defaults to ``PUBLIC_ADDRESS``
        """
        address = (address or current_app.config['PUBLIC_ADDRESS']).rstrip('/')
        return address + self.path

    def key_id(self, address=None):
        return self.iri(address) + '#main-key'

    def inbox(self, address=None):
        address = (address or current_app.config['PUBLIC_ADDRESS']).rstrip('/')
        return f'{address}/activitypub/inbox/{self.name}'


class Follower(Base):
    """An ActivityPub actor following one of our blogs.

    ``inbox`` is the actor's shared inbox if it has one, otherwise its inbox.
    """
    __tablename__ = 'activitypub_followers'

    blog: Mapped[str] = mapped_column(String, primary_key=True)
    follower: Mapped[str] = mapped_column(String, primary_key=True)
    inbox: Mapped[str] = mapped_column(String, index=True)
    username: Mapped[Optional[str]] = mapped_column(String)

    def __repr__(self):
        return f'Follower({self.blog!r}, {self.follower!r}, inbox={self.inbox!r})'

    @classmethod
    def upsert(cls, blog, follower, inbox, username=None):
        with Session.begin() as session:
            session.merge(cls(blog=blog, follower=follower, inbox=inbox,
                              username=username))
        logger.info(f'Stored follower blog={blog} actor={follower} inbox={inbox}')

    @classmethod
    def remove(cls, blog, follower):
        """Returns the number of rows removed."""
        with Session.begin() as session:
            result = session.execute(delete(cls).where(
                cls.blog == blog, cls.follower == follower))
        logger.info(f'Removed follower blog={blog} actor={follower}')
        return result.rowcount

    @classmethod
    def remove_by_inbox(cls, inbox):
        """Removes all followers with this inbox, across all blogs."""
        with Session.begin() as session:
            result = session.execute(delete(cls).where(cls.inbox == inbox))
        logger.info(f'Removed {result.rowcount} followers with inbox={inbox}')
        return result.rowcount

    @classmethod
    def for_blog(cls, blog):
        with Session() as session:
            return session.scalars(select(cls).where(cls.blog == blog)
                                   .order_by(cls.follower)).all()

    @classmethod
    def inboxes(cls, blog):
        """Returns the distinct inbox URLs of a blog's followers."""
        with Session() as session:
            return session.scalars(select(cls.inbox).where(cls.blog == blog)
                                   .distinct().order_by(cls.inbox)).all()

    @classmethod
    def count(cls, blog):
        with Session() as session:
            return session.scalar(select(func.count()).select_from(cls)
                                  .where(cls.blog == blog))


class Mention(Base):
    """A received webmention. See :mod:`webmention` for the lifecycle."""
    __tablename__ = 'webmentions'

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    source: Mapped[str] = mapped_column(String)
    target: Mapped[str] = mapped_column(String)
    created: Mapped[int] = mapped_column(default=0)
    title: Mapped[str] = mapped_column(Text, default='')
    content: Mapped[str] = mapped_column(Text, default='')
    author: Mapped[str] = mapped_column(Text, default='')
    status: Mapped[str] = mapped_column(String, default='new')

    def __repr__(self):
        return f'Mention({self.id}, {self.source!r} -> {self.target!r}, {self.status})'

    @classmethod
    def select_for(cls, source, target):
        return select(cls).where(func.lower(cls.source) == source.lower(),
                                 func.lower(cls.target) == target.lower())

    @classmethod
    def get(cls, source, target):
        with Session() as session:
            return session.scalar(cls.select_for(source, target))


Index('webmentions_source_target', func.lower(Mention.__table__.c.source),
      func.lower(Mention.__table__.c.target), unique=True)


class QueueItem(Base):
    """One item in a named queue. ``content`` is opaque to the queue."""
    __tablename__ = 'queue'

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String)
    content: Mapped[bytes] = mapped_column(LargeBinary)
    # unix seconds
    scheduled_at: Mapped[int] = mapped_column()
    attempts: Mapped[int] = mapped_column(default=0)

    __table_args__ = (Index('queue_name_scheduled', 'name', 'scheduled_at', 'id'),)

    def __repr__(self):
        return f'QueueItem({self.id}, {self.name!r}, attempts={self.attempts})'


class PersistentCache(Base):
    __tablename__ = 'persistent_cache'

    key: Mapped[str] = mapped_column(String, primary_key=True)
    value: Mapped[bytes] = mapped_column(LargeBinary)

    @classmethod
    def load(cls, key):
        """Returns the bytes value for ``key``, or None."""
        with Session() as session:
            if row := session.get(cls, key):
                return row.value

    @classmethod
    def store(cls, key, value):
        with Session.begin() as session:
            session.merge(cls(key=key, value=value))


class Post(Base):
    """A post. Authoring happens elsewhere; federation only reads these.

    ``content`` is the post's rendered HTML.
    """
    __tablename__ = 'posts'

    path: Mapped[str] = mapped_column(String, primary_key=True)
    blog: Mapped[str] = mapped_column(String, index=True)
    section: Mapped[str] = mapped_column(String, default='')
    status: Mapped[str] = mapped_column(String, default='published')
    visibility: Mapped[str] = mapped_column(String, default='public')
    published: Mapped[Optional[datetime]] = mapped_column(DateTime)
    updated: Mapped[Optional[datetime]] = mapped_column(DateTime)
    content: Mapped[str] = mapped_column(Text, default='')

    parameter_rows: Mapped[List['PostParameter']] = relationship(
        lazy='selectin', cascade='all, delete-orphan',
        order_by='PostParameter.id')

    def __repr__(self):
        return f'Post({self.path!r}, blog={self.blog!r}, status={self.status})'

    @property
    def parameters(self):
        """dict mapping parameter name to list of str values."""
        params = {}
        for row in self.parameter_rows:
            params.setdefault(row.parameter, []).append(row.value)
        return params

    def parameter(self, name):
        """Returns the first value of a parameter, or ''."""
        values = self.parameters.get(name)
        return values[0] if values else ''

    def set_parameters(self, params):
        self.parameter_rows = [PostParameter(parameter=name, value=value)
                               for name, values in params.items()
                               for value in values]

    def is_public(self):
        return self.status == 'published' and self.visibility == 'public'


class PostParameter(Base):
    __tablename__ = 'post_parameters'

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    path: Mapped[str] = mapped_column(ForeignKey('posts.path', ondelete='CASCADE'),
                                      index=True)
    parameter: Mapped[str] = mapped_column(String)
    value: Mapped[str] = mapped_column(Text)


class Notification(Base):
    __tablename__ = 'notifications'

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    created: Mapped[int] = mapped_column()
    text: Mapped[str] = mapped_column(Text)
