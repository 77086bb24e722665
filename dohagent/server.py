from twisted.python.failure import Failure
from twisted.web.resource import Resource
from twisted.web.server import NOT_DONE_YET, Request, Site

from dohagent import logger
from dohagent.pipeline.orchestrator import ECSProxy
from dohagent.pipeline.response import ProxyResponse


__all__ = ('DoHResource', 'make_site')


class DoHResource(Resource):
    """
    Hand every request, whatever its path and method, to L{ECSProxy}.

    Routing and method checks are done by the pipeline, so C{render} is
    overridden instead of the C{render_METHOD} handlers.
    """

    isLeaf = True

    def __init__(self, proxy: ECSProxy):
        super().__init__()
        self.proxy = proxy

    def render(self, request: Request):
        def connection_lost(err: Failure):
            lost.append(err)

        lost = []
        request.notifyFinish().addErrback(connection_lost)

        d = self.proxy.handle(request)
        d.addCallback(self.write_response, request, lost)
        d.addErrback(self.write_failed, request)
        return NOT_DONE_YET

    @staticmethod
    def write_response(response: ProxyResponse, request: Request, lost: list):
        if lost:
            logger.info(
                'client gone before response (%d) was sent: %s',
                response.code, lost[0].getErrorMessage(),
            )
            return

        request.setResponseCode(response.code)
        # replayed headers replace the ones twisted set, e.g. Server and Date
        headers = request.responseHeaders
        replaced = set()
        for name, value in response.headers:
            if name.lower() not in replaced:
                headers.removeHeader(name)
                replaced.add(name.lower())
            headers.addRawHeader(name, value)
        headers.setRawHeaders(b'Content-Length', [str(len(response.body)).encode()])
        request.write(response.body)
        request.finish()

    @staticmethod
    def write_failed(err: Failure, request: Request):
        logger.error('failed to write response: %s', err.getTraceback())
        if not request.finished and not request._disconnected:
            if not request.startedWriting:
                request.setResponseCode(500)
            request.finish()


def make_site(proxy: ECSProxy) -> Site:
    site = Site(DoHResource(proxy))
    site.noisy = False
    return site
