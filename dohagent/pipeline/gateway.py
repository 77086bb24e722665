import hashlib
import struct

from twisted.internet import defer
from zope.interface import Interface

from dohagent import logger
from dohagent.pipeline.response import ProxyResponse, copy_response


__all__ = ('ICacheService', 'CacheGateway', 'cache_key')


class ICacheService(Interface):
    """Key -> L{ProxyResponse} store. Eviction policy is up to the implementation."""

    def lookup(key):
        """
        @return: L{Deferred} firing with the stored L{ProxyResponse} or None.
        """

    def store(key, response):
        """
        @return: L{Deferred} firing when C{response} has been stored (or skipped).
        """


def cache_key(path: str, query: bytes) -> str:
    # length prefix keeps (path, query) boundaries unambiguous
    path_bytes = path.encode('utf8')
    h = hashlib.sha256()
    h.update(struct.pack('!I', len(path_bytes)))
    h.update(path_bytes)
    h.update(query)
    return h.hexdigest()


class CacheGateway:
    def __init__(self, service: ICacheService):
        self.service = ICacheService(service)

    @staticmethod
    def key(path: str, query: bytes) -> str:
        return cache_key(path, query)

    def lookup(self, key: str) -> defer.Deferred:
        return defer.maybeDeferred(self.service.lookup, key)

    def store(self, key: str, response: ProxyResponse) -> defer.Deferred:
        """Store a distinct copy of C{response}."""
        logger.debug('storing %s: code=%d, %d bytes', key[:16], response.code, len(response.body))
        return defer.maybeDeferred(self.service.store, key, copy_response(response))

    def __repr__(self):
        return '<CacheGateway %r>' % (self.service,)
