import itertools

from twisted.internet import defer
from twisted.python.failure import Failure
from twisted.web.iweb import IRequest

from dohagent import logger
from dohagent.pipeline.extract import ClientInputError, extract_query
from dohagent.pipeline.gateway import CacheGateway
from dohagent.pipeline.message import EncodeError, MalformedMessage, mutate
from dohagent.pipeline.response import (
    CACHE_HEADER, UPSTREAM_HEADER, ProxyResponse, text_response,
)
from dohagent.pipeline.upstream import AllUpstreamsFailed, UpstreamRacer, UpstreamResponse
from dohagent.region import RegionTable
from dohagent.utils import BackgroundTasks, PrefixedLogger, get_reactor


__all__ = ('ECSProxy',)


class ECSProxy:
    """
    DoH request pipeline:
    region -> query -> cache lookup -> ECS injection -> upstream race -> cache store.
    """

    def __init__(
            self, regions: RegionTable, racer: UpstreamRacer, gateway: CacheGateway,
            reactor=None, background: BackgroundTasks = None
    ):
        self.regions = regions
        self.racer = racer
        self.gateway = gateway
        self.reactor = get_reactor(reactor)
        if background is None:
            background = BackgroundTasks(reactor=self.reactor)
        self.background = background
        self._request_ids = itertools.count(1)

    def handle(self, request: IRequest) -> defer.Deferred:
        """
        :return: L{Deferred} that always fires with a L{ProxyResponse}.
        """
        request_id = next(self._request_ids)
        plogger = PrefixedLogger(logger, '[%d]' % request_id)
        d = self._handle(request, request_id, plogger)
        d.addErrback(self._internal_error, plogger)
        return d

    @defer.inlineCallbacks
    def _handle(self, request: IRequest, request_id: int, plogger: PrefixedLogger):
        path = request.path.decode('utf8', 'replace')
        plogger.info('%s %s', request.method.decode('latin1'), path)

        ip = self.regions.ip_for_path(path)
        if ip is None:
            plogger.info('no region for path %s', path)
            return text_response(404, 'path %s has no EDNS client subnet configured, use %s.' % (
                path, ', '.join(self.regions.paths()),
            ))

        try:
            query = extract_query(request)
        except ClientInputError as exc:
            plogger.info('bad request: %s', exc)
            return text_response(400, str(exc))

        key = self.gateway.key(path, query)
        cached = yield self.gateway.lookup(key)
        if cached is not None:
            plogger.info('cache hit: %s', path)
            return cached.with_header(CACHE_HEADER, b'HIT')
        plogger.debug('cache miss: %s', path)

        try:
            data = mutate(query, ip)
        except (MalformedMessage, EncodeError) as exc:
            plogger.info('can not process dns query: %s', exc)
            return text_response(400, 'failed to parse or modify the DNS query: %s' % exc)

        try:
            winner = yield self.racer.race(data, request_id=request_id)
        except AllUpstreamsFailed as exc:
            plogger.error('%s: %s', exc, '; '.join(exc.describe()))
            return text_response(502, 'none of the upstream DNS servers responded.')

        response = self.make_response(winner)
        self.background.schedule(self.gateway.store, key, response)
        return response

    @staticmethod
    def make_response(winner: UpstreamResponse) -> ProxyResponse:
        response = ProxyResponse(winner.code, winner.headers, winner.body)
        return (
            response
            .with_header(CACHE_HEADER, b'MISS')
            .with_header(UPSTREAM_HEADER, winner.url.encode('utf8'))
        )

    def _internal_error(self, err: Failure, plogger: PrefixedLogger):
        plogger.error('unhandled error: %s', err.getTraceback())
        return text_response(500, err.getErrorMessage() or 'Internal Server Error')

    def __repr__(self):
        return '<ECSProxy {!r} {!r}>'.format(self.regions, self.racer)
