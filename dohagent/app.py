import sys
import logging
from logging.handlers import MemoryHandler
from argparse import ArgumentParser
from typing import List, NamedTuple, Tuple

from twisted.internet import defer
from twisted.python.log import PythonLoggingObserver
from twisted.web.server import Site

from dohagent import logger
from dohagent.config import BadConfig, describe, load_settings, make_site_from_settings
from dohagent.pipeline.orchestrator import ECSProxy
from dohagent.pipeline.upstream import NoUpstreamConfigured
from dohagent.utils import watch_modification, get_reactor


ServerInfo = NamedTuple('ServerInfo', [
    ('site', Site), ('proxy', ECSProxy), ('binds', List[Tuple[str, int]]),
])


class App:
    def __init__(self, reactor=None, drain_timeout=5):
        """
        :param drain_timeout: seconds to wait for pending background tasks
            (cache stores) when stopping.
        """
        self.reactor = get_reactor(reactor)
        self.drain_timeout = drain_timeout
        self.ports = []
        self.proxy = None   # type: ECSProxy
        self._is_running = False

    @property
    def running(self):
        return self._is_running

    def start(self, server_info: ServerInfo):
        assert not self._is_running
        logger.info('starting server: %s', server_info.binds)
        self._start(server_info)
        logger.info('started')
        self._is_running = True

    def _start(self, server_info: ServerInfo):
        site, proxy, binds = server_info
        self.proxy = proxy
        self.ports.clear()
        for interface, port in binds:
            self.ports.append(self._start_tcp(port, site, interface))

    def _start_tcp(self, port, site, interface):
        tcp_port = self.reactor.listenTCP(port, site, interface=interface)
        logger.info('listening http on %s:%s', interface, tcp_port.getHost().port)
        return tcp_port

    def restart(self, server_info: ServerInfo):
        assert self._is_running
        logger.info('restarting: %s', server_info.binds)
        self.reactor.callFromThread(self._restart, server_info)

    def stop(self):
        ports, self.ports = self.ports, []
        ds = [defer.maybeDeferred(port.stopListening) for port in ports]
        if self.proxy is not None:
            ds.append(self.proxy.background.wait(timeout=self.drain_timeout))
            close = getattr(self.proxy.racer.http_client, 'close', None)
            if close is not None:
                ds.append(defer.maybeDeferred(close))
        return defer.DeferredList(ds, consumeErrors=True)

    def _restart(self, server_info: ServerInfo):
        self.stop().addBoth(lambda ignore: self._start(server_info))


class ConfigLoader:
    def __init__(self, filename: str, app: App, *, reload=False, environ=None, **overrides):
        self.filename = filename
        self.app = app
        self.environ = environ
        self.overrides = overrides

        if reload:
            assert filename, 'nothing to reload without a configuration file'
            watch_modification(self.filename, self.load)

    def load(self):
        try:
            settings = load_settings(self.environ, self.filename, **self.overrides)
        except BadConfig as exc:
            logger.error('bad configuration: %s', exc)
            return False
        except Exception:
            logger.exception('eval configuration file failed')
            return False

        if settings.log:
            enable_log()

        try:
            site, proxy = make_site_from_settings(settings, reactor=self.app.reactor)
        except NoUpstreamConfigured as exc:
            logger.error('%s', exc)
            return False

        logger.info('configuration: %s', describe(settings))
        if not settings.regions.active():
            logger.warning('no EDNS_* region address configured, every path will be 404')

        server_info = ServerInfo(site, proxy, [(settings.interface, settings.port)])
        if self.app.running:
            self.app.restart(server_info)
        else:
            self.app.start(server_info)

        if not settings.log:
            logger.info('disable logging.')
            disable_log()

        return True


def main(args=None):
    ap = ArgumentParser(
        prog='dohagent',
        description='A DNS-over-HTTPS proxy that adds EDNS client subnet by request path',
    )
    ap.add_argument('-c', '--config', default=None, help='python configuration file')
    ap.add_argument(
        '-r', '--reload', action='store_true',
        help='automatically reload configuration file')
    ap.add_argument('--log', default=None, help='path to log file')
    ap.add_argument('-i', '--interface', default=None, help='listen address')
    ap.add_argument('-p', '--port', type=int, default=None, help='listen port')
    option = ap.parse_args(args=args)

    if option.reload and not option.config:
        ap.error('--reload requires --config')

    init_log(option.log)

    reactor = get_reactor()
    app = App(reactor)
    loader = ConfigLoader(
        option.config, app, reload=option.reload,
        LISTEN_INTERFACE=option.interface, LISTEN_PORT=option.port,
    )
    succ = loader.load()
    if not succ:
        logger.error('loading server failed. config file: %s', option.config)
        raise SystemExit(1)

    reactor.addSystemEventTrigger('before', 'shutdown', app.stop)
    reactor.run()


LOG_FMT = '%(asctime)s.%(msecs)03d %(name)s[%(process)d] %(levelname)8s %(message)s'
LOG_DATE_FMT = '%Y-%m-%d %H:%M:%S'


def init_log(filename=None):
    if filename is not None:
        file_handler = logging.FileHandler(filename)
        file_handler.setFormatter(logging.Formatter(fmt=LOG_FMT, datefmt=LOG_DATE_FMT))
        buf_handler = MemoryHandler(64, target=file_handler)
        logging.getLogger().addHandler(buf_handler)

    # Output twisted messages to Python standard library logging module.
    PythonLoggingObserver().start()

    # Initialize coloredlogs.
    try:
        import coloredlogs
    except ImportError:
        logging.basicConfig(
            stream=sys.stderr, level=logging.DEBUG, format=LOG_FMT, datefmt=LOG_DATE_FMT)
    else:
        coloredlogs.install(level=logging.DEBUG, fmt=LOG_FMT, datefmt=LOG_DATE_FMT)


def enable_log():
    logging.getLogger().setLevel(logging.DEBUG)


def disable_log():
    logging.getLogger().setLevel(logging.CRITICAL)
