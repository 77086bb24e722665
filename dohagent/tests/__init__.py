import base64
import io
import os
import tempfile
import logging
from typing import Dict, Sequence

from twisted.internet import defer
from twisted.names import dns
from twisted.python.failure import Failure
from twisted.web.http_headers import Headers
from twisted.web.resource import Resource
from zope.interface import implementer

from dohagent.app import init_log, enable_log
from dohagent.cache import MemoryCacheService
from dohagent.pipeline.gateway import ICacheService
from dohagent.pipeline.message import EDNSMessage
from dohagent.utils import get_reactor


logger = logging.getLogger(__name__)


init_log()
enable_log()


def make_query(name='example.com', type_=dns.A, id=0, options=None, edns=None) -> bytes:
    """
    Wire format query for C{name}.

    :param options: EDNS options, implies an OPT record.
    :param edns: force (True) or suppress (False) the OPT record.
    """
    if edns is None:
        edns = options is not None
    msg = EDNSMessage(
        id=id, recDes=True, ednsVersion=(0 if edns else None),
        options=list(options or []),
    )
    msg.queries = [dns.Query(name.encode('utf8'), type_, dns.IN)]
    return msg.toStr()


def make_answer(query: bytes, address='192.0.2.1', ttl=300) -> bytes:
    """A canned response to C{query}."""
    msg = dns.Message()
    msg.fromStr(query)
    msg.answer = True
    msg.recAv = True
    msg.additional = []
    name = msg.queries[0].name.name
    msg.answers = [dns.RRHeader(
        name=name, type=dns.A, cls=dns.IN, ttl=ttl,
        payload=dns.Record_A(address=address, ttl=ttl),
    )]
    return msg.toStr()


def b64url(data: bytes) -> bytes:
    return base64.urlsafe_b64encode(data).rstrip(b'=')


def parse_raw(data: bytes) -> dns.Message:
    """Decode without OPT handling, to inspect the additional section as sent."""
    msg = dns.Message()
    msg.fromStr(data)
    return msg


class FakeRequest:
    """The part of L{twisted.web.server.Request} used by the pipeline."""

    def __init__(self, method=b'GET', path=b'/hk-query', args=None, headers=None, body=b''):
        self.method = method
        self.path = path
        self.args = args or {}
        self.headers = dict((k.lower(), v) for k, v in (headers or {}).items())
        self.content = io.BytesIO(body)

    @classmethod
    def get(cls, query: bytes, path=b'/hk-query'):
        return cls(b'GET', path, args={b'dns': [b64url(query)]})

    @classmethod
    def post(cls, query: bytes, path=b'/hk-query', content_type=b'application/dns-message'):
        headers = {b'content-type': content_type} if content_type else {}
        return cls(b'POST', path, headers=headers, body=query)

    def getHeader(self, name: bytes):
        return self.headers.get(name.lower())


class FakeResponse:
    def __init__(self, code=200, body=b'', headers=None, stalled=False):
        """:param stalled: the body never arrives."""
        self.code = code
        self.body = body
        self.stalled = stalled
        self.headers = Headers(headers or {
            b'Content-Type': [b'application/dns-message'],
            b'Cache-Control': [b'max-age=300'],
        })


# noinspection PyPep8Naming
class FakeHTTPClient:
    """
    Stands in for treq in L{UpstreamRacer}.

    Each url maps to (delay, result) where result is a L{FakeResponse}
    or an exception instance.
    """

    def __init__(self, reactor=None):
        self.reactor = get_reactor(reactor)
        self.map = dict()   # type: Dict[str, tuple]
        self.post_logs = []
        self.cancelled = []

    def set_response(self, url: str, response, delay=0):
        self.map[url] = (delay, response)

    def post(self, url, data=None, headers=None, timeout=None):
        self.post_logs.append(dict(url=url, data=data, headers=headers, timeout=timeout))

        def cleanup(ignore):
            self.cancelled.append(url)
            delayed.cancel()

        d = defer.Deferred(cleanup)
        delay, result = self.map.get(url, (0, ConnectionRefusedError(url)))
        if isinstance(result, Exception):
            delayed = self.reactor.callLater(delay, d.errback, Failure(result))
        else:
            delayed = self.reactor.callLater(delay, d.callback, result)
        return d

    def content(self, response: FakeResponse):
        if response.stalled:
            return defer.Deferred()
        return defer.succeed(response.body)

    def urls(self):
        return [log['url'] for log in self.post_logs]


@implementer(ICacheService)
class RecordingCacheService(MemoryCacheService):
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.lookup_logs = []
        self.store_logs = []

    def lookup(self, key):
        self.lookup_logs.append(key)
        return super().lookup(key)

    def store(self, key, response):
        self.store_logs.append((key, response))
        return super().store(key, response)


class DNSMessageResource(Resource):
    """A fake upstream DoH server answering every POST with a canned message."""

    isLeaf = True

    def __init__(self, code=200, body_func=make_answer, headers: Sequence = ()):
        super().__init__()
        self.code = code
        self.body_func = body_func
        self.headers = list(headers) or [
            (b'Content-Type', b'application/dns-message'),
            (b'Cache-Control', b'max-age=300'),
        ]
        self.requests = []

    def render_POST(self, request):
        body = request.content.read()
        self.requests.append(dict(
            content_type=request.getHeader(b'content-type'),
            accept=request.getHeader(b'accept'),
            body=body,
        ))
        request.setResponseCode(self.code)
        for name, value in self.headers:
            request.setHeader(name, value)
        if self.code >= 300:
            return b'upstream error page'
        return self.body_func(body)


def write_config(testcase, content: str) -> str:
    """Write C{content} to a temporary configuration file removed after C{testcase}."""
    fd, filename = tempfile.mkstemp(prefix='dohagent_', suffix='.py', text=True)
    os.write(fd, content.encode('utf8'))
    os.close(fd)
    testcase.addCleanup(os.unlink, filename)
    return filename
