"""Notifications for the blog's owner, eg new followers and webmentions."""
import logging

from webutil import util
from sqlalchemy import select

from models import Notification, Session

logger = logging.getLogger(__name__)


def add(text):
    """Stores a notification.

    Args:
      text (str)
    """
    logger.info(f'Notification: {text}')
    with Session.begin() as session:
        session.add(Notification(text=text, created=int(util.now().timestamp())))


def get_all():
    """Returns all notifications, newest first."""
    with Session() as session:
        return session.scalars(select(Notification).order_by(
            Notification.created.desc(), Notification.id.desc())).all()
