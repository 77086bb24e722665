import logging
import os

from twisted.internet import defer, task
from twisted.trial import unittest
from watchdog.events import FileModifiedEvent

from dohagent.utils import BackgroundTasks, PrefixedLogger, WatcherHandler


class TestBackgroundTasks(unittest.TestCase):
    def setUp(self):
        self.clock = task.Clock()
        self.tasks = BackgroundTasks(reactor=self.clock)

    def tearDown(self):
        assert not self.clock.getDelayedCalls()

    def test_schedule(self):
        done = []
        d = self.tasks.schedule(done.append, 1)
        # runs on the next reactor turn
        assert not done
        assert len(self.tasks) == 1

        self.clock.advance(0)
        assert done == [1]
        assert len(self.tasks) == 0
        self.successResultOf(d)

    def test_failure_consumed(self):
        def boom():
            raise RuntimeError('boom')

        d = self.tasks.schedule(boom)
        self.clock.advance(0)
        assert self.successResultOf(d) is None
        assert len(self.tasks) == 0

    def test_wait(self):
        slow = defer.Deferred()
        self.tasks.schedule(lambda: slow)
        self.clock.advance(0)

        waited = self.tasks.wait()
        assert not waited.called
        slow.callback(None)
        self.successResultOf(waited)

    def test_wait_timeout(self):
        slow = defer.Deferred()
        self.tasks.schedule(lambda: slow)
        self.clock.advance(0)

        waited = self.tasks.wait(timeout=5)
        self.clock.advance(4)
        assert not waited.called
        self.clock.advance(2)
        self.successResultOf(waited)
        assert len(self.tasks) == 1

        slow.callback(None)
        assert len(self.tasks) == 0

    def test_wait_nothing(self):
        self.successResultOf(self.tasks.wait(timeout=1))


def test_prefixed_logger():
    records = []

    class Handler(logging.Handler):
        def emit(self, record):
            records.append(record.getMessage())

    base = logging.getLogger('dohagent.tests.prefixed')
    handler = Handler()
    base.addHandler(handler)
    try:
        plogger = PrefixedLogger(base, '[7]')
        plogger.info('got %s', 'it')
        plogger.warning('bad %d', 1)
    finally:
        base.removeHandler(handler)

    assert records == ['[7]got it', '[7]bad 1']


def test_watcher_handler():
    calls = []
    handler = WatcherHandler('/tmp/dohagent/../dohagent/config.py', lambda: calls.append(1))

    handler.on_modified(FileModifiedEvent('/tmp/dohagent/other.py'))
    assert not calls
    handler.on_modified(FileModifiedEvent(os.path.join('/tmp/dohagent', 'config.py')))
    assert calls == [1]
