import functools
import os
from typing import Mapping, NamedTuple, Tuple
from urllib.parse import urlsplit

import treq
from twisted.internet import defer
from twisted.web.client import HTTPConnectionPool

from dohagent.cache import MemoryCacheService, TTLCache, make_policy
from dohagent.pipeline.gateway import CacheGateway
from dohagent.pipeline.orchestrator import ECSProxy
from dohagent.pipeline.upstream import UpstreamRacer
from dohagent.region import DEFAULT_REGIONS, BadRegionAddress, RegionTable
from dohagent.server import make_site
from dohagent.utils import get_reactor


__all__ = (
    'Settings', 'BadConfig', 'PreconfiguredTreq', 'load_settings', 'eval_config_file',
    'parse_upstreams', 'make_proxy', 'make_site_from_settings',
)


DEFAULTS = dict(
    UPSTREAMS='https://1.1.1.1/dns-query,https://8.8.8.8/dns-query',
    LISTEN_INTERFACE='127.0.0.1',
    LISTEN_PORT=8053,
    UPSTREAM_TIMEOUT=5,
    CACHE_SIZE=10000,
    CACHE_DEFAULT_TTL=60,
    CACHE_MAX_TTL=86400,
    LOG=True,
)


Settings = NamedTuple('Settings', [
    ('upstreams', Tuple[str, ...]),
    ('regions', RegionTable),
    ('interface', str),
    ('port', int),
    ('upstream_timeout', float),
    ('cache_size', int),
    ('cache_default_ttl', float),
    ('cache_max_ttl', float),
    ('log', bool),
])


class BadConfig(Exception):
    pass


def eval_config_file(filename):
    result = dict()
    with open(filename, 'rt') as fp:
        exec(fp.read(), result)
    return result


def parse_upstreams(string) -> Tuple[str, ...]:
    if isinstance(string, str):
        items = string.split(',')
    else:
        items = list(string)

    upstreams = []
    for item in items:
        url = item.strip()
        if not url:
            continue
        parsed = urlsplit(url)
        if parsed.scheme not in ('http', 'https') or not parsed.hostname:
            raise BadConfig('bad upstream url: %r' % url)
        upstreams.append(url)

    if not upstreams:
        raise BadConfig('no upstream configured')
    return tuple(upstreams)


def parse_bool(value) -> bool:
    if isinstance(value, str):
        return value.strip().lower() not in ('', '0', 'false', 'no', 'off')
    return bool(value)


def _number(config: Mapping, key: str, type_, minimum=0):
    value = config[key]
    try:
        value = type_(value)
    except (TypeError, ValueError) as exc:
        raise BadConfig('%s: bad value %r' % (key, value)) from exc
    if value < minimum:
        raise BadConfig('%s: must be at least %s, got %r' % (key, minimum, value))
    return value


def load_settings(environ: Mapping[str, str] = None, filename: str = None, **overrides) -> Settings:
    """
    Merge defaults, C{environ} (os.environ by default), variables of the
    python configuration file C{filename} and C{overrides}, later ones win.

    :raise BadConfig:
    """
    if environ is None:
        environ = os.environ

    config = dict(DEFAULTS)
    keys = set(DEFAULTS) | set(region.config_key for region in DEFAULT_REGIONS)
    config.update((k, v) for k, v in environ.items() if k in keys)
    if filename is not None:
        config.update((k, v) for k, v in eval_config_file(filename).items() if k in keys)
    config.update((k, v) for k, v in overrides.items() if v is not None)

    try:
        regions = RegionTable.from_settings(config)
    except BadRegionAddress as exc:
        raise BadConfig(str(exc)) from exc

    return Settings(
        upstreams=parse_upstreams(config['UPSTREAMS']),
        regions=regions,
        interface=str(config['LISTEN_INTERFACE']),
        port=_number(config, 'LISTEN_PORT', int),
        upstream_timeout=_number(config, 'UPSTREAM_TIMEOUT', float, minimum=0.001),
        cache_size=_number(config, 'CACHE_SIZE', int),
        cache_default_ttl=_number(config, 'CACHE_DEFAULT_TTL', float),
        cache_max_ttl=_number(config, 'CACHE_MAX_TTL', float),
        log=parse_bool(config['LOG']),
    )


class PreconfiguredTreq:
    """treq with fixed keyword arguments (e.g. C{pool}) for upstream requests."""

    __slots__ = ('post', 'content', 'pool')

    def __init__(self, **kwargs):
        self.post = functools.partial(treq.post, **kwargs)
        self.content = treq.content
        self.pool = kwargs.get('pool')

    def close(self) -> defer.Deferred:
        if self.pool is None:
            return defer.succeed(None)
        return self.pool.closeCachedConnections()


def make_proxy(settings: Settings, http_client=None, cache_service=None, reactor=None) -> ECSProxy:
    reactor = get_reactor(reactor)
    if http_client is None:
        http_client = PreconfiguredTreq(pool=HTTPConnectionPool(reactor))
    if cache_service is None:
        cache = TTLCache(policy=make_policy(settings.cache_size), reactor=reactor)
        cache_service = MemoryCacheService(
            cache, default_ttl=settings.cache_default_ttl,
            max_ttl=settings.cache_max_ttl, reactor=reactor,
        )

    racer = UpstreamRacer(
        settings.upstreams, http_client=http_client,
        timeout=settings.upstream_timeout, reactor=reactor,
    )
    return ECSProxy(settings.regions, racer, CacheGateway(cache_service), reactor=reactor)


def make_site_from_settings(settings: Settings, **kwargs):
    proxy = make_proxy(settings, **kwargs)
    return make_site(proxy), proxy


def describe(settings: Settings) -> str:
    return 'listen=%s:%d, upstreams=%s, regions=%r' % (
        settings.interface, settings.port, ','.join(settings.upstreams), settings.regions,
    )
