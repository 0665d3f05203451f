"""Background service that processes the webmention and ActivityPub send queues.

Run with ``flask --app router run-workers``. Also has follower maintenance
commands, eg ``flask --app router refetch-followers main`` and
``flask --app router check-followers main``.
"""
import logging
import signal
import threading

import click

# webmention verification fetches our own pages in process, so register all
# routes
import activitypub, nodeinfo, pages, webfinger, webmention
import federation
from flask_app import app
from models import Blog
import taskqueue

logger = logging.getLogger(__name__)

QUEUES = {
    webmention.QUEUE: webmention.task,
    activitypub.QUEUE: activitypub.send_task,
}


def workers(stop_event=None, poll=taskqueue.POLL_INTERVAL):
    """Returns a :class:`taskqueue.Worker` for each queue, sharing ``stop_event``."""
    stop_event = stop_event or threading.Event()
    return [taskqueue.Worker(name, handler, app=app, poll=poll,
                             stop_event=stop_event)
            for name, handler in QUEUES.items()]


@app.cli.command('run-workers')
@click.option('--poll', default=taskqueue.POLL_INTERVAL, show_default=True,
              help='Seconds to wait when a queue is empty.')
def run_workers(poll):
    """Runs the queue workers until SIGTERM or SIGINT."""
    stop_event = threading.Event()

    def stop(signum, frame):
        logger.info(f'Got signal {signum}, stopping workers')
        stop_event.set()

    signal.signal(signal.SIGTERM, stop)
    signal.signal(signal.SIGINT, stop)

    federation.send_profile_updates()

    threads = [threading.Thread(target=worker.run, name=worker.name, daemon=True)
               for worker in workers(stop_event=stop_event, poll=poll)]
    for thread in threads:
        thread.start()

    # wait on the event, not join, so that signals get handled
    while not stop_event.wait(1):
        pass

    for thread in threads:
        thread.join()
    logger.info('All workers stopped')


def _blog(name):
    blog = Blog.get(name)
    if not blog:
        raise click.BadParameter(f'No blog {name}', param_hint='BLOG')
    return blog


@app.cli.command('refetch-followers')
@click.argument('blog')
def refetch_followers(blog):
    """Re-resolves BLOG's followers and updates their inboxes."""
    count = federation.refetch_followers(_blog(blog))
    click.echo(f'Updated {count} followers')


@app.cli.command('add-follower')
@click.argument('blog')
@click.argument('address')
def add_follower(blog, address):
    """Adds ADDRESS, an @user@host address or actor IRI, as a follower of BLOG."""
    blog = _blog(blog)
    # webfinger flashes errors, which needs a request context
    with app.test_request_context():
        actor = federation.add_follower(blog, address)

    if not actor:
        raise click.ClickException(f"Couldn't add {address}")
    click.echo(f'Added {actor.id} with inbox {actor.delivery_inbox}')


@app.cli.command('check-followers')
@click.argument('blog')
def check_followers(blog):
    """Fetches BLOG's followers and prints whether each is ok, gone, or moved."""
    checks = federation.check_followers(_blog(blog))
    for check in checks:
        if check.status == 'moved':
            click.echo(f'{check.id} moved to {check.moved_to}')
        elif check.status == 'gone':
            click.echo(f'{check.id} gone: {check.error}')
        else:
            click.echo(f'{check.id} ok')

    click.echo(f'Checked {len(checks)} followers')
