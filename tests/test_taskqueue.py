"""Unit tests for taskqueue.py."""
from datetime import timedelta
import threading
from unittest import mock

from webutil import testutil
from sqlalchemy import update

import taskqueue
from taskqueue import Drop, Retry, Worker
from models import QueueItem, Session

from .testutil import TestCase

NOW_TS = int(testutil.NOW.timestamp())


def set_attempts(item, attempts):
    """Makes an item due now with the given number of attempts."""
    with Session.begin() as session:
        session.execute(update(QueueItem).where(QueueItem.id == item.id)
                        .values(attempts=attempts, scheduled_at=NOW_TS))


class TaskQueueTest(TestCase):

    def test_enqueue_peek_dequeue(self):
        self.assertIsNone(taskqueue.peek('q'))

        item = taskqueue.enqueue('q', {'x': 1})
        got = taskqueue.peek('q')
        self.assertEqual(item.id, got.id)
        self.assertEqual({'x': 1}, taskqueue.payload(got))
        self.assertEqual(NOW_TS, got.scheduled_at)
        self.assertEqual(0, got.attempts)

        taskqueue.dequeue(got)
        self.assertIsNone(taskqueue.peek('q'))

    def test_enqueue_bytes(self):
        taskqueue.enqueue('q', b'raw')
        self.assertEqual(b'raw', taskqueue.peek('q').content)

    def test_fifo_at_equal_scheduled_at(self):
        a = taskqueue.enqueue('q', {'n': 'a'})
        b = taskqueue.enqueue('q', {'n': 'b'})
        self.assertEqual(a.scheduled_at, b.scheduled_at)

        self.assertEqual(a.id, taskqueue.peek('q').id)
        taskqueue.dequeue(a)
        self.assertEqual(b.id, taskqueue.peek('q').id)

    def test_scheduled_at_ordering(self):
        later = taskqueue.enqueue('q', {'n': 'later'},
                                  at=testutil.NOW - timedelta(seconds=5))
        sooner = taskqueue.enqueue('q', {'n': 'sooner'},
                                   at=testutil.NOW - timedelta(seconds=10))
        self.assertEqual([sooner.id, later.id],
                         [item.id for item in taskqueue.items('q')])
        self.assertEqual(sooner.id, taskqueue.peek('q').id)

    def test_peek_ignores_future_items(self):
        taskqueue.enqueue('q', {}, at=testutil.NOW + timedelta(seconds=30))
        self.assertIsNone(taskqueue.peek('q'))
        self.assertEqual(1, len(taskqueue.items('q')))

    def test_queues_are_separate(self):
        taskqueue.enqueue('a', {'n': 1})
        self.assertIsNone(taskqueue.peek('b'))

    def test_reschedule(self):
        item = taskqueue.enqueue('q', {})
        taskqueue.reschedule(item, timedelta(minutes=1))

        self.assertIsNone(taskqueue.peek('q'))
        [got] = taskqueue.items('q')
        self.assertEqual(1, got.attempts)
        self.assertEqual(NOW_TS + 60, got.scheduled_at)

    def test_backoff(self):
        with mock.patch('random.uniform', return_value=1):
            self.assertEqual(timedelta(seconds=30), taskqueue.backoff(0))
            self.assertEqual(timedelta(seconds=120), taskqueue.backoff(2))
            self.assertEqual(timedelta(minutes=10), taskqueue.backoff(5))
            self.assertEqual(timedelta(minutes=10), taskqueue.backoff(1000))

        with mock.patch('random.uniform', return_value=.5):
            self.assertEqual(timedelta(seconds=15), taskqueue.backoff(0))


class WorkerTest(TestCase):

    def test_run_once_empty(self):
        handler = mock.Mock()
        self.assertFalse(Worker('q', handler).run_once())
        handler.assert_not_called()

    def test_success_dequeues(self):
        handler = mock.Mock()
        item = taskqueue.enqueue('q', {'x': 1})

        self.assertTrue(Worker('q', handler).run_once())
        self.assertEqual(item.id, handler.call_args.args[0].id)
        self.assertEqual([], taskqueue.items('q'))

    def test_drop_dequeues(self):
        taskqueue.enqueue('q', {})
        Worker('q', mock.Mock(side_effect=Drop('nope'))).run_once()
        self.assertEqual([], taskqueue.items('q'))

    def test_retry_reschedules(self):
        taskqueue.enqueue('q', {})
        Worker('q', mock.Mock(side_effect=Retry('later'))).run_once()

        [item] = taskqueue.items('q')
        self.assertEqual(1, item.attempts)
        self.assertGreater(item.scheduled_at, NOW_TS)
        self.assertLessEqual(item.scheduled_at, NOW_TS + 30)

    def test_other_exception_retries(self):
        taskqueue.enqueue('q', {})
        Worker('q', mock.Mock(side_effect=ValueError('boom'))).run_once()

        [item] = taskqueue.items('q')
        self.assertEqual(1, item.attempts)

    def test_retry_gives_up_at_max_attempts(self):
        item = taskqueue.enqueue('q', {})
        worker = Worker('q', mock.Mock(side_effect=Retry()))

        set_attempts(item, taskqueue.MAX_ATTEMPTS - 2)
        worker.run_once()
        [item] = taskqueue.items('q')
        self.assertEqual(taskqueue.MAX_ATTEMPTS - 1, item.attempts)

        set_attempts(item, taskqueue.MAX_ATTEMPTS - 1)
        worker.run_once()
        self.assertEqual([], taskqueue.items('q'))

    def test_retry_max_attempts(self):
        item = taskqueue.enqueue('q', {})
        worker = Worker('q', mock.Mock(side_effect=Retry(max_attempts=2)))

        worker.run_once()
        [item] = taskqueue.items('q')
        self.assertEqual(1, item.attempts)

        set_attempts(item, 1)
        worker.run_once()
        self.assertEqual([], taskqueue.items('q'))

    def test_retry_max_attempts_capped(self):
        item = taskqueue.enqueue('q', {})
        set_attempts(item, taskqueue.MAX_ATTEMPTS - 1)
        Worker('q', mock.Mock(side_effect=Retry(max_attempts=50))).run_once()
        self.assertEqual([], taskqueue.items('q'))

    def test_run_stops(self):
        stop = threading.Event()
        handler = mock.Mock(side_effect=lambda item: stop.set())
        taskqueue.enqueue('q', {})

        worker = Worker('q', handler, poll=.01, stop_event=stop)
        thread = threading.Thread(target=worker.run)
        thread.start()
        thread.join(timeout=5)

        self.assertFalse(thread.is_alive())
        handler.assert_called_once()
        self.assertEqual([], taskqueue.items('q'))

    def test_stop(self):
        worker = Worker('q', mock.Mock(), poll=.01)
        worker.stop()
        worker.run()
        self.assertTrue(worker.stop_event.is_set())
