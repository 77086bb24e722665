from typing import NamedTuple, Sequence, Tuple


__all__ = (
    'ProxyResponse', 'text_response', 'copy_response', 'CACHE_HEADER', 'UPSTREAM_HEADER',
)


CACHE_HEADER = b'X-Dns-Cache'
UPSTREAM_HEADER = b'X-Dns-Upstream'

# not replayed from upstream responses, the front end sets its own framing
HOP_BY_HOP_HEADERS = frozenset([
    b'connection', b'keep-alive', b'proxy-authenticate', b'proxy-authorization',
    b'te', b'trailer', b'trailers', b'transfer-encoding', b'upgrade', b'content-length',
])


HeaderList = Tuple[Tuple[bytes, bytes], ...]


class ProxyResponse(NamedTuple('ProxyResponse', [
    ('code', int), ('headers', HeaderList), ('body', bytes),
])):
    __slots__ = ()

    def get_header(self, name: bytes):
        name = name.lower()
        for key, value in self.headers:
            if key.lower() == name:
                return value
        return None

    def with_header(self, name: bytes, value: bytes) -> 'ProxyResponse':
        """Return a copy with every C{name} header replaced by a single C{value}."""
        lower = name.lower()
        headers = tuple((k, v) for k, v in self.headers if k.lower() != lower)
        return self._replace(headers=headers + ((name, value),))


def filter_headers(raw_headers: Sequence[Tuple[bytes, Sequence[bytes]]]) -> HeaderList:
    """Flatten C{Headers.getAllRawHeaders()} output, dropping hop-by-hop headers."""
    return tuple(
        (name, value)
        for name, values in raw_headers
        if name.lower() not in HOP_BY_HOP_HEADERS
        for value in values
    )


def text_response(code: int, text: str) -> ProxyResponse:
    headers = ((b'Content-Type', b'text/plain; charset=utf-8'),)
    return ProxyResponse(code, headers, text.encode('utf8'))


def copy_response(response: ProxyResponse) -> ProxyResponse:
    return ProxyResponse(response.code, tuple(response.headers), bytes(response.body))
