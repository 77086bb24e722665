import logging
import os

from twisted.internet import defer, task
from twisted.python.failure import Failure
from watchdog.events import FileSystemEventHandler, FileModifiedEvent
from watchdog.observers import Observer


logger = logging.getLogger(__name__)


class WatcherHandler(FileSystemEventHandler):
    def __init__(self, filename, callback):
        self.path = os.path.normpath(os.path.realpath(filename))
        self.callback = callback

    def on_modified(self, event: FileModifiedEvent):
        path = os.path.normpath(os.path.realpath(event.src_path))
        if path == self.path:
            self.callback()


def watch_modification(filename, callback):
    observer = Observer()
    dirname = os.path.dirname(os.path.realpath(filename))
    observer.schedule(WatcherHandler(filename, callback), dirname)
    observer.start()
    return observer


class PrefixedLogger:
    def __init__(self, logger, prefix: str):
        self.logger = logger
        self.prefix = prefix

    def debug(self, msg, *args, **kwargs):
        self.logger.debug(self.prefix + msg, *args, **kwargs)

    def info(self, msg, *args, **kwargs):
        self.logger.info(self.prefix + msg, *args, **kwargs)

    def warning(self, msg, *args, **kwargs):
        self.logger.warning(self.prefix + msg, *args, **kwargs)

    def error(self, msg, *args, **kwargs):
        self.logger.error(self.prefix + msg, *args, **kwargs)

    def exception(self, msg, *args, **kwargs):
        self.logger.exception(self.prefix + msg, *args, **kwargs)

    def critical(self, msg, *args, **kwargs):
        self.logger.critical(self.prefix + msg, *args, **kwargs)


def get_reactor(reactor=None):
    if reactor is None:
        from twisted.internet import reactor
    return reactor


class BackgroundTasks:
    """
    Registry of detached work that must not hold up the response path.

    Each task runs on the next reactor turn. Failures are logged and consumed,
    so a task can never surface in the caller's callback chain.
    """

    def __init__(self, reactor=None):
        self.reactor = get_reactor(reactor)
        self.pending = set()

    def schedule(self, func, *args, **kwargs) -> defer.Deferred:
        def failed(err: Failure):
            logger.error('background task %r failed: %s', name, err.getErrorMessage())
            logger.debug('%s', err.getTraceback())

        def done(ignore):
            self.pending.discard(d)

        name = getattr(func, '__qualname__', repr(func))
        d = task.deferLater(self.reactor, 0, func, *args, **kwargs)
        d.addErrback(failed)
        d.addBoth(done)
        self.pending.add(d)
        return d

    def wait(self, timeout=None) -> defer.Deferred:
        """Fire when every pending task has finished, or after C{timeout} seconds."""
        d = defer.DeferredList(list(self.pending), consumeErrors=True)
        if timeout is None:
            return d

        # timing out must not cancel the tasks themselves
        waiter = defer.Deferred()

        def fire(ignore):
            if not waiter.called:
                waiter.callback(None)

        d.addBoth(fire)
        waiter.addTimeout(timeout, self.reactor)
        waiter.addErrback(self._wait_timed_out, timeout)
        return waiter

    def _wait_timed_out(self, err: Failure, timeout):
        err.trap(defer.TimeoutError)
        logger.warning(
            'gave up waiting for %d background tasks after %s seconds',
            len(self.pending), timeout,
        )

    def __len__(self):
        return len(self.pending)
