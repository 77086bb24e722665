from typing import List, NamedTuple, Sequence, Tuple

import treq
from twisted.internet import defer
from twisted.python.failure import Failure

from dohagent import logger
from dohagent.pipeline.response import HeaderList, filter_headers
from dohagent.utils import PrefixedLogger, get_reactor


__all__ = (
    'UpstreamRacer', 'UpstreamResponse',
    'AllUpstreamsFailed', 'BadUpstreamStatus', 'NoUpstreamConfigured',
)


DNS_MESSAGE_HEADERS = {
    b'Content-Type': [b'application/dns-message'],
    b'Accept': [b'application/dns-message'],
}


UpstreamResponse = NamedTuple('UpstreamResponse', [
    ('url', str), ('code', int), ('headers', HeaderList), ('body', bytes),
])


class NoUpstreamConfigured(Exception):
    pass


class BadUpstreamStatus(Exception):
    def __init__(self, url: str, code: int):
        super().__init__('upstream %s responded with status %d' % (url, code))
        self.url = url
        self.code = code


class AllUpstreamsFailed(Exception):
    def __init__(self, failures: Sequence[Tuple[str, Failure]]):
        super().__init__('all %d upstreams failed' % len(failures))
        self.failures = list(failures)    # type: List[Tuple[str, Failure]]

    def describe(self) -> List[str]:
        return ['%s: %s' % (url, err.getErrorMessage()) for url, err in self.failures]


class RaceHandler:
    """Fan-in of one race: first success wins, fails when every upstream failed."""

    def __init__(
            self, racer: 'UpstreamRacer', result_d: defer.Deferred,
            data: bytes, request_id=-1, reactor=None
    ):
        self.racer = racer
        self.finished = False
        self.result_d = result_d
        self.results = [None] * len(racer.upstreams)

        cls_name = type(racer).__name__
        self.logger = PrefixedLogger(logger, '[%d]%s: ' % (request_id, cls_name))
        self.reactor = get_reactor(reactor)

        self.fetch_ds = [
            racer.fetch(url, data).addBoth(self.update_results, i)
            for i, url in enumerate(racer.upstreams)
        ]

    def cancel_all(self):
        for d in self.fetch_ds:
            d.cancel()

    def cancel(self):
        """Stop the race, the result is left to fail with CancelledError."""
        self.finished = True
        self.cancel_all()

    def resolve_success(self, index: int):
        winner = self.results[index]
        self.logger.info('pick %s, status=%d', winner.url, winner.code)
        self.finished = True
        try:
            self.result_d.callback(winner)
        finally:
            self.reactor.callLater(0, self.cancel_all)

    def resolve_fail(self):
        failures = list(zip(self.racer.upstreams, self.results))
        self.finished = True
        self.result_d.errback(Failure(AllUpstreamsFailed(failures)))

    def update_results(self, result, index: int):
        url = self.racer.upstreams[index]
        if isinstance(result, Failure):
            if isinstance(result.value, defer.CancelledError):
                verb = 'cancelled'
            else:
                verb = 'failed'
            self.logger.debug('%s: upstream=%s, reason=%s', verb, url, result.getErrorMessage())
        else:
            self.logger.debug('got: upstream=%s, status=%d', url, result.code)

        self.results[index] = result
        if self.finished:
            return

        if not isinstance(result, Failure):
            self.resolve_success(index)
            return

        # all upstreams finished
        if all(res is not None for res in self.results):
            self.resolve_fail()


class UpstreamRacer:
    """
    Send a DNS query to several DoH servers (RFC 8484 POST) at once
    and keep the first successful answer.
    """

    def __init__(self, upstreams: Sequence[str], http_client=treq, timeout=5.0, reactor=None):
        """
        :param http_client: an object with treq's C{post} and C{content} functions.
        :param timeout: seconds allowed to each upstream request, body included.
        """
        if not upstreams:
            raise NoUpstreamConfigured('no upstream DoH server configured')
        self.upstreams = tuple(upstreams)
        self.http_client = http_client
        self.timeout = timeout
        self.reactor = get_reactor(reactor)

    def race(self, data: bytes, request_id=-1) -> defer.Deferred:
        d = defer.Deferred(lambda ignore: handler.cancel())
        handler = RaceHandler(self, d, data, request_id=request_id, reactor=self.reactor)
        return d

    def fetch(self, url: str, data: bytes) -> defer.Deferred:
        d = self.http_client.post(
            url, data=data, headers=DNS_MESSAGE_HEADERS, timeout=self.timeout,
        )
        d.addCallback(self._got_response, url)
        # treq only times the response headers, the body is covered here
        d.addTimeout(self.timeout, self.reactor)
        return d

    def _got_response(self, response, url: str):
        code = response.code
        d = self.http_client.content(response)
        if 200 <= code < 300:
            def got_body(body: bytes):
                headers = filter_headers(response.headers.getAllRawHeaders())
                return UpstreamResponse(url, code, headers, body)
        else:
            # body drained so the connection can be reused
            def got_body(body: bytes):
                raise BadUpstreamStatus(url, code)

        return d.addCallback(got_body)

    def __repr__(self):
        cls_name = type(self).__name__
        sub = '|'.join(self.upstreams)
        return '<{cls_name} {sub}>'.format_map(locals())
