"""Durable named work queues, stored in the ``queue`` table, and their workers.

Items are delivered at least once, in ``(scheduled_at, id)`` order per queue
name. Exactly one :class:`Worker` should run per queue name.
"""
from datetime import timedelta
import logging
import random
import threading

from webutil import util
from webutil.util import json_dumps, json_loads
from sqlalchemy import delete, select, update

from models import QueueItem, Session

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 20
BASE_BACKOFF = timedelta(seconds=30)
MAX_BACKOFF = timedelta(minutes=10)
POLL_INTERVAL = 15  # seconds


class Retry(Exception):
    """Raised by a worker handler to retry the item later with backoff.

    Args:
      max_attempts (int): optional, stop retrying after this many attempts.
        Always capped at :data:`MAX_ATTEMPTS`.
    """
    def __init__(self, msg='', max_attempts=None):
        super().__init__(msg)
        self.max_attempts = max_attempts


class Drop(Exception):
    """Raised by a worker handler to give up on the item without retrying."""


def _timestamp(dt):
    return int(dt.timestamp())


def enqueue(name, payload, at=None):
    """Adds an item to a queue.

    Args:
      name (str): queue name
      payload (dict or bytes): dicts are JSON encoded
      at (datetime.datetime): when the item becomes due, defaults to now

    Returns:
      QueueItem:
    """
    if isinstance(payload, dict):
        payload = json_dumps(payload).encode()

    item = QueueItem(name=name, content=payload, attempts=0,
                     scheduled_at=_timestamp(at or util.now()))
    with Session.begin() as session:
        session.add(item)

    logger.debug(f'Enqueued {item} at {item.scheduled_at}')
    return item


def peek(name):
    """Returns the next due item for a queue, or None."""
    with Session() as session:
        return session.scalars(
            select(QueueItem)
            .where(QueueItem.name == name,
                   QueueItem.scheduled_at <= _timestamp(util.now()))
            .order_by(QueueItem.scheduled_at, QueueItem.id)
            .limit(1)
        ).first()


def reschedule(item, delay):
    """Pushes an item back by ``delay`` from now and counts an attempt.

    Args:
      item (QueueItem)
      delay (datetime.timedelta)
    """
    scheduled_at = _timestamp(util.now() + delay)
    with Session.begin() as session:
        session.execute(update(QueueItem).where(QueueItem.id == item.id)
                        .values(scheduled_at=scheduled_at,
                                attempts=QueueItem.attempts + 1))
    item.scheduled_at = scheduled_at
    item.attempts += 1


def dequeue(item):
    with Session.begin() as session:
        session.execute(delete(QueueItem).where(QueueItem.id == item.id))


def items(name):
    """Returns all items in a queue, due or not, in delivery order."""
    with Session() as session:
        return session.scalars(select(QueueItem).where(QueueItem.name == name)
                               .order_by(QueueItem.scheduled_at, QueueItem.id)
                               ).all()


def payload(item):
    """Decodes an item's JSON payload."""
    return json_loads(item.content)


def backoff(attempts):
    """Exponential backoff with jitter for an item that's failed ``attempts`` times.

    Returns:
      datetime.timedelta: in the upper half of ``BASE_BACKOFF * 2^attempts``,
      capped at :data:`MAX_BACKOFF`
    """
    delay = min(BASE_BACKOFF * 2 ** min(attempts, 16), MAX_BACKOFF)
    return delay * random.uniform(.5, 1)


class Worker:
    """Processes one queue.

    ``handler(item)`` is called for each due item. If it returns, the item is
    dequeued. If it raises :class:`Drop`, the item is dequeued and logged. Any
    other exception retries with :func:`backoff` until the attempt cap.

    Args:
      name (str): queue name
      handler (callable): takes a :class:`QueueItem`
      app (flask.Flask): optional, :meth:`run` pushes an app context for it
      poll (float): seconds to wait when nothing is due
      stop_event (threading.Event): optional, shared shutdown signal
    """
    def __init__(self, name, handler, app=None, poll=POLL_INTERVAL,
                 stop_event=None):
        self.name = name
        self.handler = handler
        self.app = app
        self.poll = poll
        self.stop_event = stop_event or threading.Event()

    def __repr__(self):
        return f'Worker({self.name!r})'

    def run_once(self):
        """Processes the next due item, if any.

        Returns:
          bool: whether an item was processed
        """
        item = peek(self.name)
        if not item:
            return False

        try:
            self.handler(item)
        except Drop as e:
            logger.warning(f'Dropping {item}: error={e}')
            dequeue(item)
        except Retry as e:
            self._retry(item, e, max_attempts=e.max_attempts)
        except Exception as e:
            logger.warning(f'{self.name} handler failed on {item}', exc_info=True)
            self._retry(item, e)
        else:
            dequeue(item)

        return True

    def _retry(self, item, err, max_attempts=None):
        limit = min(max_attempts or MAX_ATTEMPTS, MAX_ATTEMPTS)
        if item.attempts + 1 >= limit:
            logger.warning(f'Giving up on {item} after {item.attempts + 1} attempts: error={err}')
            dequeue(item)
            return

        delay = backoff(item.attempts)
        logger.info(f'Retrying {item} in {delay}: error={err}')
        reschedule(item, delay)

    def run(self):
        """Loops until :meth:`stop` is called."""
        logger.info(f'Starting {self}')
        if self.app:
            with self.app.app_context():
                self._loop()
        else:
            self._loop()
        logger.info(f'Stopped {self}')

    def _loop(self):
        while not self.stop_event.is_set():
            try:
                processed = self.run_once()
            except Exception:
                logger.exception(f'{self} failed')
                processed = False

            if not processed:
                self.stop_event.wait(self.poll)

    def stop(self):
        self.stop_event.set()
