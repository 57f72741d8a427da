#!/usr/bin/env python3


#   Copyright 2024 Jarek Siembida
#
#   Licensed under the Apache License, Version 2.0 (the "License");
#   you may not use this file except in compliance with the License.
#   You may obtain a copy of the License at
#
#       http://www.apache.org/licenses/LICENSE-2.0
#
#   Unless required by applicable law or agreed to in writing, software
#   distributed under the License is distributed on an "AS IS" BASIS,
#   WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
#   See the License for the specific language governing permissions and
#   limitations under the License.


#
# Pure Python NTP packet codec and one-shot client query.
#
# https://datatracker.ietf.org/doc/html/rfc5905
#


import logging
from datetime import datetime, timedelta, timezone
from math import floor, isfinite
from socket import SOCK_DGRAM
from socket import socket, getaddrinfo, gaierror
from struct import error as struct_error
from struct import pack, unpack
from time import time_ns


VERSION = 4
PORT = 123
PACKET_SIZE = 48
PACKET_FORMAT = "!BBbbLL4sQQQQ"
PRECISION = -18  # 2**-18 s (assumed in RFC)
MINPOLL = 4  # 2**4 = 16 s
NOSYNC = 3
MODE_CLIENT = 3
SOCKET_TIMEOUT = 5.0

# Seconds between 1900/01/01 and 1970/01/01
NTP_DELTA = 2208988800
UNIX_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
NANOS = 1000000000

# Section 7.3, leap indicator.
LEAP_INDICATORS = (
    "no warning",
    "last minute has 61 seconds",
    "last minute has 59 seconds",
    "alarm condition (clock not synchronized)",
)

# Section 7.3, association mode.
MODES = (
    "reserved",
    "symmetric active",
    "symmetric passive",
    "client",
    "server",
    "broadcast",
    "reserved for ntp control message",
    "reserved for private use",
)


log = logging.getLogger("ntpquery")


class NtpError(Exception):
    pass


class NtpEncodingError(NtpError):
    pass


class NtpDecodingError(NtpError):
    pass


class NtpTransportError(NtpError):
    pass


class NtpTime:
    """Unix time with nanosecond precision.

    datetime only goes down to microseconds, which is not enough to carry
    an NTP timestamp without loss, hence this small value type.
    """

    __slots__ = ("seconds", "nanoseconds")

    def __init__(self, seconds, nanoseconds=0):
        if not isinstance(seconds, int) or not isinstance(nanoseconds, int):
            raise TypeError(
                "NtpTime needs integer seconds and nanoseconds, got %r, %r"
                % (seconds, nanoseconds)
            )
        carry, nanoseconds = divmod(nanoseconds, NANOS)
        self.seconds = seconds + carry
        self.nanoseconds = nanoseconds

    @classmethod
    def now(cls):
        return cls(0, time_ns())

    @classmethod
    def from_datetime(cls, dt):
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        d = dt - UNIX_EPOCH
        return cls(d.days * 86400 + d.seconds, d.microseconds * 1000)

    def to_datetime(self):
        return UNIX_EPOCH + timedelta(
            seconds=self.seconds,
            microseconds=self.nanoseconds // 1000,
        )

    def timestamp(self):
        return self.seconds + self.nanoseconds / NANOS

    def _key(self):
        return self.seconds, self.nanoseconds

    def __eq__(self, other):
        if isinstance(other, NtpTime):
            return self._key() == other._key()
        return NotImplemented

    def __lt__(self, other):
        if isinstance(other, NtpTime):
            return self._key() < other._key()
        return NotImplemented

    def __le__(self, other):
        if isinstance(other, NtpTime):
            return self._key() <= other._key()
        return NotImplemented

    def __hash__(self):
        return hash(self._key())

    def __str__(self):
        return "%s.%09dZ" % (
            self.to_datetime().strftime("%Y-%m-%dT%H:%M:%S"),
            self.nanoseconds,
        )

    def __repr__(self):
        return "NtpTime(%d, %d)" % self._key()


def to_ntptime(t=None):
    if t is None:
        return NtpTime.now()
    if isinstance(t, NtpTime):
        return t
    if isinstance(t, datetime):
        return NtpTime.from_datetime(t)
    # bool is an int, but never a meaningful time.
    if isinstance(t, int) and not isinstance(t, bool):
        return NtpTime(t)
    if isinstance(t, float) and isfinite(t):
        secs = floor(t)
        return NtpTime(secs, round((t - secs) * NANOS))
    raise NtpEncodingError("Invalid time value %r" % (t,))


def encode_timestamp(t=None):
    # Page 13, timestamp is 64bit, unsigned, fixed point.
    # Seconds wrap around at the era boundary (2036/02/07).
    t = to_ntptime(t)
    secs = (t.seconds + NTP_DELTA) & 0xffffffff
    # Rounded binary fraction, always below 2**32 for nanoseconds < 1e9.
    frac = ((t.nanoseconds << 32) + NANOS // 2) // NANOS
    return (secs << 32) | frac


def decode_timestamp(value, era=0):
    if not 0 <= value <= 0xffffffffffffffff:
        raise NtpDecodingError("Invalid NTP timestamp %r" % (value,))
    secs = (value >> 32) + (era << 32) - NTP_DELTA
    nanos = ((value & 0xffffffff) * NANOS + 0x80000000) >> 32
    # NtpTime carries a fraction rounded up to a full second.
    return NtpTime(secs, nanos)


class NtpPacket:
    """NTP packet header, section 7.3 of RFC 5905.

    Timestamps and the root delay/dispersion are kept in their raw wire
    representation, so that decode is the exact inverse of encode.
    Instances are immutable, use replace() to derive a modified copy.
    """

    __slots__ = (
        "leap",
        "version",
        "mode",
        "stratum",
        "poll",
        "precision",
        "root_delay",
        "root_dispersion",
        "reference_id",
        "reference_timestamp",
        "originate_timestamp",
        "receive_timestamp",
        "transmit_timestamp",
    )

    def __init__(
        self,
        *,
        leap=NOSYNC,
        version=VERSION,
        mode=MODE_CLIENT,
        stratum=0,
        poll=MINPOLL,
        precision=PRECISION,
        root_delay=0,
        root_dispersion=0,
        reference_id=b"\0\0\0\0",
        reference_timestamp=0,
        originate_timestamp=0,
        receive_timestamp=0,
        transmit_timestamp=0
    ):
        init = object.__setattr__
        init(self, "leap", leap)
        init(self, "version", version)
        init(self, "mode", mode)
        init(self, "stratum", stratum)
        init(self, "poll", poll)
        init(self, "precision", precision)
        init(self, "root_delay", root_delay)
        init(self, "root_dispersion", root_dispersion)
        init(self, "reference_id", reference_id)
        init(self, "reference_timestamp", reference_timestamp)
        init(self, "originate_timestamp", originate_timestamp)
        init(self, "receive_timestamp", receive_timestamp)
        init(self, "transmit_timestamp", transmit_timestamp)

    def __setattr__(self, name, value):
        raise AttributeError("NtpPacket is immutable, use replace()")

    def __delattr__(self, name):
        raise AttributeError("NtpPacket is immutable")

    def _fields(self):
        return tuple(getattr(self, i) for i in self.__slots__)

    def __eq__(self, other):
        if isinstance(other, NtpPacket):
            return self._fields() == other._fields()
        return NotImplemented

    def __hash__(self):
        return hash(self._fields())

    def __repr__(self):
        return "NtpPacket(%s)" % ", ".join(
            "%s=%r" % (i, getattr(self, i)) for i in self.__slots__
        )

    def replace(self, **changes):
        fields = {i: getattr(self, i) for i in self.__slots__}
        unknown = set(changes) - set(fields)
        if unknown:
            raise TypeError("Unknown NtpPacket fields: %s" % sorted(unknown))
        fields.update(changes)
        return NtpPacket(**fields)

    @property
    def flags(self):
        return (
            ((self.leap & 3) << 6)
            | ((self.version & 7) << 3)
            | ((self.mode & 7) << 0)
        )

    @property
    def root_delay_seconds(self):
        # Page 13, short format is 32bit, unsigned, 16.16 fixed point.
        return self.root_delay / 65536

    @property
    def root_dispersion_seconds(self):
        return self.root_dispersion / 65536

    def _check(self):
        # pack() would silently truncate or pad some of these.
        if not 0 <= self.leap <= 3:
            raise NtpEncodingError("Invalid leap indicator %r" % self.leap)
        if not 0 <= self.version <= 7:
            raise NtpEncodingError("Invalid version %r" % self.version)
        if not 0 <= self.mode <= 7:
            raise NtpEncodingError("Invalid mode %r" % self.mode)
        if (
            not isinstance(self.reference_id, bytes)
            or len(self.reference_id) != 4
        ):
            raise NtpEncodingError(
                "Invalid reference identifier %r" % (self.reference_id,)
            )

    def encode(self):
        self._check()
        try:
            return pack(
                PACKET_FORMAT,
                self.flags,
                self.stratum,
                self.poll,
                self.precision,
                self.root_delay,
                self.root_dispersion,
                self.reference_id,
                self.reference_timestamp,
                self.originate_timestamp,
                self.receive_timestamp,
                self.transmit_timestamp,
            )
        except struct_error as e:
            raise NtpEncodingError("Invalid NTP packet fields: %s" % e) from e

    @staticmethod
    def decode(b):
        b = b[:PACKET_SIZE]
        if len(b) != PACKET_SIZE:
            raise NtpDecodingError(
                "Invalid packet, %d bytes instead of %d"
                % (len(b), PACKET_SIZE)
            )

        (
            b1,
            stratum,
            poll,
            precision,
            root_delay,
            root_dispersion,
            reference_id,
            reference_timestamp,
            originate_timestamp,
            receive_timestamp,
            transmit_timestamp,
        ) = unpack(PACKET_FORMAT, b)

        return NtpPacket(
            leap=(b1 >> 6) & 3,
            version=(b1 >> 3) & 7,
            mode=(b1 >> 0) & 7,
            stratum=stratum,
            poll=poll,
            precision=precision,
            root_delay=root_delay,
            root_dispersion=root_dispersion,
            reference_id=reference_id,
            reference_timestamp=reference_timestamp,
            originate_timestamp=originate_timestamp,
            receive_timestamp=receive_timestamp,
            transmit_timestamp=transmit_timestamp,
        )

    def decode_leap_indicator(self):
        return LEAP_INDICATORS[(self.flags >> 6) & 3]

    def decode_version(self):
        return (self.flags >> 3) & 7

    def decode_mode(self):
        return MODES[self.flags & 7]

    def decode_stratum(self):
        if self.stratum == 0:
            return "unspecified"
        if self.stratum == 1:
            return "primary reference (e.g radio clock)"
        return "secondary reference (via NTP)"

    def decode_reference_identifier(self):
        # Depends on stratum: an IPv4 address (or IPv6 hash) above 1,
        # a four character ASCII code below. Not interpreted here, the raw
        # bytes are in reference_id.
        return ""

    def decode_reference_timestamp(self):
        return decode_timestamp(self.reference_timestamp)

    def decode_originate_timestamp(self):
        return decode_timestamp(self.originate_timestamp)

    def decode_receive_timestamp(self):
        return decode_timestamp(self.receive_timestamp)

    def decode_transmit_timestamp(self):
        return decode_timestamp(self.transmit_timestamp)


def query(request, host, *, port=PORT, timeout=SOCKET_TIMEOUT):
    """Send one request to an NTP server and wait for one reply.

    Returns a tuple of the decoded reply and the local time it was
    received at. Nothing is retried, all failures are raised as NtpError
    subclasses and the socket is always closed.
    """
    if (
        isinstance(timeout, bool)
        or not isinstance(timeout, (int, float))
        or not isfinite(timeout)
        or timeout <= 0
    ):
        raise ValueError("Socket timeout must be a positive number of seconds")

    # Hostnames that cannot be IDNA encoded fail with UnicodeError.
    try:
        family, _, _, _, address = getaddrinfo(host, port, 0, SOCK_DGRAM)[0]
    except (gaierror, UnicodeError, IndexError) as e:
        raise NtpTransportError("Cannot resolve %s" % host) from e

    # Servers echo our transmit timestamp back in the originate field.
    stamp = encode_timestamp()
    outgoing = request.replace(
        reference_timestamp=stamp,
        originate_timestamp=stamp,
        transmit_timestamp=stamp,
    )
    payload = outgoing.encode()

    try:
        s = socket(family, SOCK_DGRAM)
    except OSError as e:
        raise NtpTransportError("Cannot create socket: %s" % e) from e

    with s:
        s.settimeout(timeout)
        try:
            s.connect(address)
        except OSError as e:
            log.info("%s Cannot connect: %s", host, e)
            raise NtpTransportError(
                "Cannot connect to %s: %s" % (host, e)
            ) from e

        try:
            n = s.send(payload)
        except OSError as e:
            log.info("%s Cannot send: %s", host, e)
            raise NtpTransportError("Cannot send to %s: %s" % (host, e)) from e
        if n != PACKET_SIZE:
            raise NtpTransportError(
                "Short write to %s, %d bytes of %d" % (host, n, PACKET_SIZE)
            )
        log.debug("%s Sent %d bytes", host, n)

        try:
            data = s.recv(PACKET_SIZE)
        except OSError as e:
            log.info("%s Cannot receive: %s", host, e)
            raise NtpTransportError(
                "Cannot receive from %s: %s" % (host, e)
            ) from e
        t = NtpTime.now()
        log.debug("%s Received %d bytes", host, len(data))

    if len(data) < PACKET_SIZE:
        raise NtpTransportError(
            "Short read from %s, %d bytes of %d"
            % (host, len(data), PACKET_SIZE)
        )

    response = NtpPacket.decode(data)
    if response.originate_timestamp != stamp:
        log.warning("%s Reply does not echo our transmit timestamp", host)
    return response, t


def format_response(server, response, t):
    return "\n".join((
        "server: %s" % server,
        "leap: %s" % response.decode_leap_indicator(),
        "version: %d" % response.decode_version(),
        "mode: %s" % response.decode_mode(),
        "stratum: %s (%d)" % (response.decode_stratum(), response.stratum),
        "poll: %d" % response.poll,
        "precision: %d" % response.precision,
        "root delay: %g" % response.root_delay_seconds,
        "root dispersion: %g" % response.root_dispersion_seconds,
        "reference: %s" % response.decode_reference_timestamp(),
        "originate: %s" % response.decode_originate_timestamp(),
        "receive: %s" % response.decode_receive_timestamp(),
        "transmit: %s" % response.decode_transmit_timestamp(),
        "destination: %s" % t,
    ))


def argv_parser(progname=None):
    import argparse

    if progname is None:
        progname = "ntpquery"

    parser = argparse.ArgumentParser(
        prog=progname,
        formatter_class=argparse.RawTextHelpFormatter,
        description="Query NTP servers and print the decoded replies",
        epilog="Example: %s pool.ntp.org" % progname,
    )
    parser.add_argument(
        "server",
        nargs="+",
        help="NTP server(s) to query, can be addresses or hostnames.",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        choices=["error", "warning", "info", "debug"],
        default="warning",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=PORT,
        help="UDP port of the NTP server(s)",
    )
    parser.add_argument(
        "--socket-timeout",
        type=float,
        default=SOCKET_TIMEOUT,
        help="how long to wait for a reply from NTP server",
    )
    parser.add_argument(
        "--ntp-version",
        type=int,
        choices=range(1, 8),
        default=VERSION,
        metavar="{1..7}",
        help="version number to put in the request",
    )
    return parser


def main(argv=None):
    args = argv_parser().parse_args(argv)
    log_level = getattr(logging, args.log_level.upper())

    logging.basicConfig(format="%(asctime)s %(levelname)s %(message)s")
    logging.getLogger().setLevel(log_level)

    request = NtpPacket(version=args.ntp_version)
    failed = 0
    for i, server in enumerate(args.server):
        try:
            response, t = query(
                request,
                server,
                port=args.port,
                timeout=args.socket_timeout,
            )
        except NtpError as e:
            log.error("%s %s", server, e)
            failed += 1
            continue
        if i:
            print(flush=True)
        print(format_response(server, response, t), flush=True)

    if failed:
        raise SystemExit(1)


if __name__ == "__main__":
    main()
