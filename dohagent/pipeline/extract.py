import base64
import binascii

from twisted.web.iweb import IRequest


__all__ = ('extract_query', 'ClientInputError', 'DNS_MESSAGE_TYPE')


DNS_MESSAGE_TYPE = b'application/dns-message'
DNS_QUERY_PARAM = b'dns'


class ClientInputError(Exception):
    pass


def media_type(content_type: bytes) -> bytes:
    return content_type.split(b';', 1)[0].strip().lower()


def b64url_decode_nopad(string: bytes) -> bytes:
    string = string.rstrip(b'=')
    padded = string + b'=' * (-len(string) % 4)
    try:
        return base64.b64decode(padded, altchars=b'-_', validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ClientInputError('"dns" parameter is not valid base64url: %s' % exc) from exc


def extract_query(request: IRequest) -> bytes:
    """
    Get the raw DNS query carried by a DoH request (RFC 8484 section 4.1).

    :raise ClientInputError: unsupported method, content type or bad parameter.
    """
    method = request.method
    if method == b'POST':
        content_type = request.getHeader(b'content-type') or b''
        if media_type(content_type) != DNS_MESSAGE_TYPE:
            raise ClientInputError(
                'unsupported content type %r, expect %s'
                % (content_type.decode('latin1'), DNS_MESSAGE_TYPE.decode())
            )
        request.content.seek(0)
        return request.content.read()
    elif method == b'GET':
        values = (request.args or {}).get(DNS_QUERY_PARAM)
        if not values or not values[0]:
            raise ClientInputError('GET request is missing the "dns" query parameter')
        return b64url_decode_nopad(values[0])
    else:
        raise ClientInputError(
            'unsupported request method %s, use GET or POST (%s)'
            % (method.decode('latin1'), DNS_MESSAGE_TYPE.decode())
        )
