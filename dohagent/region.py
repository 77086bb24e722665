from ipaddress import ip_address
from types import MappingProxyType
from typing import Mapping, NamedTuple, Optional, Sequence


__all__ = ('Region', 'DEFAULT_REGIONS', 'RegionTable', 'BadRegionAddress')


Region = NamedTuple('Region', [('name', str), ('path', str), ('config_key', str)])


DEFAULT_REGIONS = (
    Region('sh', '/sh-query', 'EDNS_SH'),
    Region('hk', '/hk-query', 'EDNS_HK'),
    Region('jp', '/jp-query', 'EDNS_JP'),
    Region('us', '/us-query', 'EDNS_US'),
)


class BadRegionAddress(ValueError):
    pass


class RegionTable:
    """Fixed path -> region -> client subnet address mapping."""

    def __init__(self, addresses: Mapping[str, str], regions: Sequence[Region] = DEFAULT_REGIONS):
        """
        :param addresses: region name -> IP address string.
            Regions missing here (or mapped to an empty value) are inactive.
        """
        self.regions = tuple(regions)
        by_path = dict()
        ips = dict()
        for region in self.regions:
            by_path[region.path] = region
            ip = addresses.get(region.name)
            if ip:
                try:
                    ip_address(ip)
                except ValueError as exc:
                    raise BadRegionAddress('%s: bad address %r' % (region.name, ip)) from exc
                ips[region.name] = ip

        self._by_path = MappingProxyType(by_path)
        self._ips = MappingProxyType(ips)

    @classmethod
    def from_settings(cls, settings: Mapping[str, str], regions: Sequence[Region] = DEFAULT_REGIONS):
        """Build from a flat configuration mapping keyed by C{Region.config_key}."""
        addresses = dict(
            (region.name, (settings.get(region.config_key) or '').strip())
            for region in regions
        )
        return cls(addresses, regions=regions)

    def ip_for_path(self, path: str) -> Optional[str]:
        region = self._by_path.get(path)
        if region is None:
            return None
        return self._ips.get(region.name)

    def paths(self):
        return [region.path for region in self.regions]

    def active(self):
        return dict(self._ips)

    def __repr__(self):
        cls = type(self).__name__
        active = ','.join('%s=%s' % item for item in sorted(self._ips.items()))
        return '<{cls} {active}>'.format_map(locals())
