import abc
import math
import re
from collections import OrderedDict

from twisted.internet import defer
from zope.interface import implementer

from dohagent import logger
from dohagent.pipeline.gateway import ICacheService
from dohagent.pipeline.response import ProxyResponse
from dohagent.utils import get_reactor


__all__ = ('BaseCachePolicy', 'UnlimitedPolicy', 'LRUPolicy', 'TTLCache', 'MemoryCacheService')


class BaseCachePolicy(metaclass=abc.ABCMeta):
    @abc.abstractmethod
    def touch(self, key):
        """Record a use of C{key}, return an evicted key or None."""

    @abc.abstractmethod
    def remove(self, key):
        pass

    @abc.abstractmethod
    def clear(self):
        pass


class UnlimitedPolicy(BaseCachePolicy):
    def touch(self, key):
        pass

    def remove(self, key):
        pass

    def clear(self):
        pass


class LRUPolicy(BaseCachePolicy):
    def __init__(self, maxsize):
        assert maxsize > 0
        self.maxsize = maxsize
        self.od = OrderedDict()

    def touch(self, key):
        assert key is not None
        self.od.setdefault(key)
        self.od.move_to_end(key)
        if len(self.od) > self.maxsize:
            return self.od.popitem(last=False)[0]

    def remove(self, key):
        del self.od[key]

    def clear(self):
        self.od.clear()


def make_policy(maxsize: int) -> BaseCachePolicy:
    if maxsize > 0:
        return LRUPolicy(maxsize)
    else:
        return UnlimitedPolicy()


class TTLCache:
    def __init__(self, clean_inteval=30, policy: BaseCachePolicy = None, reactor=None):
        self.clean_inteval = clean_inteval
        self.policy = policy or UnlimitedPolicy()
        self.reactor = get_reactor(reactor)

        self.map = dict()   # key -> (value, expire_time)
        self.started_time = None    # type: float
        self.pending_clean = dict()
        self.delayed_calls = dict()

    def put(self, key, value, ttl: float):
        assert key is not None
        assert ttl > 0

        evicted = self.policy.touch(key)
        if evicted is not None:
            del self.map[evicted]

        now = self.reactor.seconds()
        if self.started_time is None:
            self.started_time = now

        expire_time = now + ttl
        self.map[key] = value, expire_time

        tick = self._get_tick(expire_time)
        if tick not in self.pending_clean:
            assert tick not in self.delayed_calls
            clean_time = self.started_time + tick * self.clean_inteval
            dc = self.reactor.callLater(
                # add a small delay to clean time to avoid firing self.run_clean() too early
                clean_time - now + 0.01,
                self._run_clean_up, tick,
            )
            self.delayed_calls[tick] = dc
        pending = self.pending_clean.setdefault(tick, [])
        pending.append(key)

    def get(self, key):
        value, expire_time = self.map[key]  # raise KeyError
        self.policy.touch(key)
        now = self.reactor.seconds()
        if expire_time < now:
            self.remove(key)
            raise KeyError(key)

        return value, expire_time - now

    def peek(self, key):
        value, expire_time = self.map[key]  # raise KeyError
        return value, expire_time - self.reactor.seconds()

    def remove(self, key):
        del self.map[key]
        self.policy.remove(key)

    def __len__(self):
        return len(self.map)

    def _get_tick(self, time):
        return math.ceil((time - self.started_time) / self.clean_inteval)

    def _run_clean_up(self, tick):
        del self.delayed_calls[tick]
        now = self.reactor.seconds()
        for key in self.pending_clean.pop(tick):
            try:
                value, expire_time = self.map[key]
            except KeyError:
                pass
            else:
                if expire_time <= now:
                    self.remove(key)
                else:
                    # re-put with a later ttl, scheduled under another tick
                    assert key in self.pending_clean[self._get_tick(expire_time)]

    def clear(self):
        self.map.clear()
        self.policy.clear()
        self.pending_clean.clear()
        # we need cancel all DelayedCall in unittest
        for dc in self.delayed_calls.values():
            dc.cancel()
        self.delayed_calls.clear()


MAX_AGE_RE = re.compile(br'(?:^|,)\s*max-age\s*=\s*"?(\d+)"?\s*(?:,|$)', re.IGNORECASE)
UNCACHEABLE_DIRECTIVES = (b'no-store', b'no-cache', b'private')


def response_ttl(response: ProxyResponse, default_ttl: float, max_ttl: float) -> float:
    """Freshness lifetime from Cache-Control, 0 if the response must not be cached."""
    cache_control = response.get_header(b'cache-control')
    if cache_control is None:
        return min(default_ttl, max_ttl)

    directives = [d.strip().lower() for d in cache_control.split(b',')]
    if any(d in UNCACHEABLE_DIRECTIVES for d in directives):
        return 0

    matched = MAX_AGE_RE.search(cache_control)
    if not matched:
        return min(default_ttl, max_ttl)
    return min(int(matched.group(1)), max_ttl)


@implementer(ICacheService)
class MemoryCacheService:
    """In-process L{ICacheService} on top of L{TTLCache}."""

    def __init__(self, cache: TTLCache = None, default_ttl=60, max_ttl=86400, reactor=None):
        self.reactor = get_reactor(reactor)
        self.cache = cache if cache is not None else TTLCache(reactor=self.reactor)
        self.default_ttl = default_ttl
        self.max_ttl = max_ttl

    def lookup(self, key):
        try:
            response, ttl = self.cache.get(key)
        except KeyError:
            return defer.succeed(None)
        else:
            return defer.succeed(response)

    def store(self, key, response: ProxyResponse):
        ttl = response_ttl(response, self.default_ttl, self.max_ttl)
        if ttl > 0:
            self.cache.put(key, response, ttl)
        else:
            logger.debug('not caching %s: ttl=%r', key[:16], ttl)
        return defer.succeed(None)

    def clear(self):
        self.cache.clear()

    def __len__(self):
        return len(self.cache)

    def __repr__(self):
        return '<MemoryCacheService size={}>'.format(len(self.cache))
