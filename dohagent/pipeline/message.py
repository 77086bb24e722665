import math
import socket
import struct
from ipaddress import IPv4Network, IPv6Network, ip_address, ip_network
from typing import List, Tuple, Union

from twisted.names import dns
from twisted.names.dns import Message, _EDNSMessage, _OPTHeader, _OPTVariableOption


__all__ = (
    'EDNSMessage', 'OPTClientSubnetOption', 'MalformedMessage', 'EncodeError',
    'decode', 'encode', 'inject_ecs', 'mutate',
)


NetworkType = Union[IPv4Network, IPv6Network]


DEFAULT_UDP_PAYLOAD_SIZE = 4096
ECS_SOURCE_PREFIX = 24
ECS_SCOPE_PREFIX = 0

MAX_LABEL_LENGTH = 63
MAX_NAME_LENGTH = 255
MAX_MESSAGE_LENGTH = 65535

HEADER_FMT = '!H2B4H'


class MalformedMessage(Exception):
    pass


class EncodeError(Exception):
    pass


# noinspection PyPep8Naming
class EDNSMessage(_EDNSMessage):
    """
    Fixed bugs:
        1. No options field.
    """

    compareAttributes = _EDNSMessage.compareAttributes + ('options',)

    def __init__(
            self, id=0, answer=False, opCode=dns.OP_QUERY, auth=False,
            trunc=False, recDes=False, recAv=False, rCode=0,
            ednsVersion=0, dnssecOK=False, authenticData=False,
            checkingDisabled=False, maxSize=512,
            queries=None, answers=None, authority=None, additional=None, options=None
    ):
        super().__init__(
            id=id, answer=answer, opCode=opCode, auth=auth,
            trunc=trunc, recDes=recDes, recAv=recAv, rCode=rCode,
            ednsVersion=ednsVersion, dnssecOK=dnssecOK, authenticData=authenticData,
            checkingDisabled=checkingDisabled, maxSize=maxSize,
            queries=queries, answers=answers, authority=authority, additional=additional,
        )
        self.options = options or []    # type: List[_OPTVariableOption]

    @classmethod
    def _fromMessage(cls, message: Message):
        """
        Construct a new L{EDNSMessage} from a L{Message}.

        The C{OPT} record, if any, is removed from the C{additional} section and
        its attributes and options are kept on the new message.

        @raise MalformedMessage: more than one C{OPT} record.
        """
        opt_records = [
            OPTHeader.fromRRHeader(r) for r in message.additional
            if r.type == dns.OPT
        ]
        if len(opt_records) > 1:
            raise MalformedMessage('%d OPT records in additional section' % len(opt_records))

        new_message = cls(
            id=message.id,
            answer=message.answer,
            opCode=message.opCode,
            auth=message.auth,
            trunc=message.trunc,
            recDes=message.recDes,
            recAv=message.recAv,
            rCode=message.rCode,
            authenticData=message.authenticData,
            checkingDisabled=message.checkingDisabled,
            # None until an OPT record is found
            ednsVersion=None,
            dnssecOK=False,
            queries=message.queries[:],
            answers=message.answers[:],
            authority=message.authority[:],
            additional=[r for r in message.additional if r.type != dns.OPT],
        )

        if opt_records:
            opt = opt_records[0]
            new_message.ednsVersion = opt.version
            new_message.dnssecOK = opt.dnssecOK
            new_message.maxSize = opt.udpPayloadSize
            new_message.rCode = opt.extendedRCODE << 4 | message.rCode
            new_message.options = opt.options   # FIXED: options field

        return new_message

    def _toMessage(self):
        """
        Convert to a standard L{dns.Message}, appending an L{OPTHeader} with the
        I{EDNS} attributes and options when C{ednsVersion} is not None.
        """
        m = self._messageFactory(
            id=self.id,
            answer=self.answer,
            opCode=self.opCode,
            auth=self.auth,
            trunc=self.trunc,
            recDes=self.recDes,
            recAv=self.recAv,
            # Assign the lower 4 bits to the message
            rCode=self.rCode & 0xf,
            authenticData=self.authenticData,
            checkingDisabled=self.checkingDisabled,
        )

        m.queries = self.queries[:]
        m.answers = self.answers[:]
        m.authority = self.authority[:]
        m.additional = self.additional[:]

        if self.ednsVersion is not None:
            o = OPTHeader(
                version=self.ednsVersion,
                dnssecOK=self.dnssecOK,
                udpPayloadSize=self.maxSize,
                # Assign the upper 8 bits to the OPT record
                extendedRCODE=self.rCode >> 4,
                options=self.options,   # FIXED: options field
            )
            m.additional.append(o)

        return m


class OPTHeader(_OPTHeader):
    pass


class BadOPTClientSubnetData(Exception):
    pass


class OPTClientSubnetOption(_OPTVariableOption):
    CLIENT_SUBNET_OPTION_CODE = 8
    FAMILY_IPV4 = 1
    FAMILY_IPV6 = 2

    DATA_FMT = '!HBB'

    @classmethod
    def from_subnet(cls, subnet: NetworkType, scope_prefix=ECS_SCOPE_PREFIX):
        if subnet.version == 4:
            addr_family = cls.FAMILY_IPV4
            so_af = socket.AF_INET
        else:
            addr_family = cls.FAMILY_IPV6
            so_af = socket.AF_INET6

        source_prefix = subnet.prefixlen
        addr_data = socket.inet_pton(so_af, str(subnet.network_address))

        # address MUST be truncated to the number of bits
        # indicated by the SOURCE PREFIX-LENGTH field,
        # padding with 0 bits to pad to the end of the last octet needed.
        addr_data = addr_data[:math.ceil(source_prefix / 8)]

        data = struct.pack(cls.DATA_FMT, addr_family, source_prefix, scope_prefix) + addr_data
        return cls(cls.CLIENT_SUBNET_OPTION_CODE, data)

    @classmethod
    def from_ip(cls, ip: str, source_prefix=ECS_SOURCE_PREFIX, scope_prefix=ECS_SCOPE_PREFIX):
        address = ip_address(ip)
        subnet = ip_network('%s/%d' % (address, source_prefix), strict=False)
        return cls.from_subnet(subnet, scope_prefix=scope_prefix)

    @classmethod
    def parse_data(cls, data: bytes) -> Tuple[NetworkType, int]:
        def pad_zero(b: bytes, n: int):
            pad_len = n - len(b)
            return b + b'\0' * pad_len

        headsize = struct.calcsize(cls.DATA_FMT)
        if len(data) < headsize:
            raise BadOPTClientSubnetData('data too short: %r' % data)

        head = data[:headsize]
        addr_family, source_prefix, scope_prefix = struct.unpack(cls.DATA_FMT, head)

        addr_data = data[headsize:]
        if len(addr_data) != math.ceil(source_prefix / 8):
            raise BadOPTClientSubnetData(
                'address too short or too long: %r, prefix=%d' % (addr_data, source_prefix)
            )

        if addr_family == cls.FAMILY_IPV4:
            so_af = socket.AF_INET
            full_addr_len = 4
        elif addr_family == cls.FAMILY_IPV6:
            so_af = socket.AF_INET6
            full_addr_len = 16
        else:
            raise BadOPTClientSubnetData('bad addr_family: %d' % addr_family)

        ip_string = socket.inet_ntop(so_af, pad_zero(addr_data, full_addr_len))
        try:
            subnet = ip_network('{ip_string}/{source_prefix}'.format_map(locals()))
        except ValueError as exc:
            raise BadOPTClientSubnetData('bad address') from exc

        return subnet, scope_prefix


def decode(data: bytes) -> EDNSMessage:
    """
    Parse DNS wire data.

    :raise MalformedMessage: truncated or invalid data, or header counts
        that do not match the decoded sections.
    """
    message = Message()
    try:
        message.fromStr(data)
        counts = struct.unpack(HEADER_FMT, data[:Message.headerSize])[3:]
    except (EOFError, ValueError, struct.error) as exc:
        raise MalformedMessage('bad dns message: %r' % exc) from exc

    decoded = tuple(map(len, (
        message.queries, message.answers, message.authority, message.additional,
    )))
    if decoded != counts:
        raise MalformedMessage(
            'section counts mismatch, header: %r, decoded: %r' % (counts, decoded)
        )

    try:
        return EDNSMessage._fromMessage(message)
    except (EOFError, struct.error) as exc:
        raise MalformedMessage('bad OPT record: %r' % exc) from exc


def inject_ecs(message: EDNSMessage, ip: str) -> EDNSMessage:
    """
    Replace every client subnet option of C{message} with a single one for
    C{ip}/24. An OPT record is synthesized if the message has none.
    """
    try:
        ecs_option = OPTClientSubnetOption.from_ip(ip)
    except ValueError as exc:
        raise EncodeError('bad client subnet address %r' % ip) from exc

    if message.ednsVersion is None:
        message.ednsVersion = 0
        message.dnssecOK = False
        message.maxSize = DEFAULT_UDP_PAYLOAD_SIZE
        message.options = []

    message.options = [
        option for option in message.options
        if option.code != OPTClientSubnetOption.CLIENT_SUBNET_OPTION_CODE
    ]
    message.options.append(ecs_option)
    return message


def check_name(name: dns.Name):
    raw = name.name
    if not raw:
        return

    labels = raw.split(b'.')
    if labels[-1] == b'':
        labels.pop()
    for label in labels:
        if not label:
            raise EncodeError('empty label in %r' % raw)
        if len(label) > MAX_LABEL_LENGTH:
            raise EncodeError('label too long (%d) in %r' % (len(label), raw))
    # length octet per label plus the root label
    if sum(len(label) + 1 for label in labels) + 1 > MAX_NAME_LENGTH:
        raise EncodeError('name too long: %r' % raw)


def encode(message: EDNSMessage) -> bytes:
    """
    :raise EncodeError: the message can not be represented in wire format.
    """
    for query in message.queries:
        check_name(query.name)
    for section in (message.answers, message.authority, message.additional):
        for rr in section:
            check_name(rr.name)

    m = message._toMessage()
    # dns.Message truncates to maxSize (512 by default) unless it is 0
    m.maxSize = 0
    try:
        data = m.toStr()
    except (ValueError, struct.error) as exc:
        raise EncodeError('can not encode message: %r' % exc) from exc

    if len(data) > MAX_MESSAGE_LENGTH:
        raise EncodeError('message too long: %d bytes' % len(data))
    return data


def mutate(data: bytes, ip: str) -> bytes:
    return encode(inject_ecs(decode(data), ip))
