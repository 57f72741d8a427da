from datetime import datetime, timezone

import pytest

from ntpquery import (
    NTP_DELTA,
    NtpDecodingError,
    NtpEncodingError,
    NtpTime,
    decode_timestamp,
    encode_timestamp,
)


def test_unix_epoch():
    assert decode_timestamp(NTP_DELTA << 32) == NtpTime(0, 0)
    assert encode_timestamp(NtpTime(0)) == NTP_DELTA << 32
    assert encode_timestamp(0) == NTP_DELTA << 32


def test_ntp_epoch():
    t = decode_timestamp(0)

    assert t == NtpTime(-NTP_DELTA)
    assert t.to_datetime() == datetime(1900, 1, 1, tzinfo=timezone.utc)


def test_binary_fraction():
    # 2**31 / 2**32 is half a second, not 0.2147483648 s.
    value = (NTP_DELTA << 32) | 0x80000000
    assert decode_timestamp(value) == NtpTime(0, 500000000)
    assert encode_timestamp(NtpTime(0, 500000000)) == value
    assert encode_timestamp(NtpTime(0, 250000000)) & 0xffffffff == 0x40000000


def test_fraction_rounds_up_to_next_second():
    value = (NTP_DELTA << 32) | 0xffffffff
    assert decode_timestamp(value) == NtpTime(1, 0)


def test_smallest_fraction():
    assert decode_timestamp((NTP_DELTA << 32) | 1) == NtpTime(0, 0)
    assert decode_timestamp((NTP_DELTA << 32) | 5) == NtpTime(0, 1)


@pytest.mark.parametrize(
    "seconds, nanoseconds",
    [
        (0, 0),
        (0, 1),
        (0, 999999999),
        (1, 123456789),
        (1700000000, 1),
        (1700000000, 500000001),
        (2085978495, 999999999),
        (-NTP_DELTA, 7),
    ],
)
def test_nanosecond_round_trip(seconds, nanoseconds):
    t = NtpTime(seconds, nanoseconds)
    assert decode_timestamp(encode_timestamp(t)) == t


def test_round_trip_every_millisecond_step():
    for nanos in range(0, 1000000000, 999983):
        t = NtpTime(1234567890, nanos)
        assert decode_timestamp(encode_timestamp(t)) == t


def test_era_wrap():
    # 2036/02/07 06:28:16 is the first second of era 1.
    first = NtpTime(2 ** 32 - NTP_DELTA)
    value = encode_timestamp(first)

    assert value == 0
    assert decode_timestamp(value, era=1) == first
    assert str(first) == "2036-02-07T06:28:16.000000000Z"


def test_decode_out_of_range():
    with pytest.raises(NtpDecodingError):
        decode_timestamp(-1)
    with pytest.raises(NtpDecodingError):
        decode_timestamp(2 ** 64)


def test_encode_datetime():
    dt = datetime(2024, 3, 1, 12, 30, 15, 250000, tzinfo=timezone.utc)
    t = decode_timestamp(encode_timestamp(dt))

    assert t.to_datetime() == dt
    assert t.nanoseconds == 250000000


def test_encode_naive_datetime_is_utc():
    naive = datetime(2024, 3, 1, 12, 30, 15)
    aware = naive.replace(tzinfo=timezone.utc)
    assert encode_timestamp(naive) == encode_timestamp(aware)


def test_encode_float():
    assert encode_timestamp(1.5) == ((NTP_DELTA + 1) << 32) | 0x80000000
    assert decode_timestamp(encode_timestamp(-0.5)) == NtpTime(-1, 500000000)


def test_encode_now():
    before = NtpTime.now()
    t = decode_timestamp(encode_timestamp())
    after = NtpTime.now()

    # One nanosecond of slack for the rounding of the binary fraction.
    assert NtpTime(before.seconds, before.nanoseconds - 1) <= t
    assert t <= NtpTime(after.seconds, after.nanoseconds + 1)


@pytest.mark.parametrize("value", ["now", b"\0", True, None.__class__])
def test_encode_invalid(value):
    with pytest.raises(NtpEncodingError):
        encode_timestamp(value)


def test_ntptime_normalises_nanoseconds():
    assert NtpTime(1, 1500000000) == NtpTime(2, 500000000)
    assert NtpTime(0, -1) == NtpTime(-1, 999999999)
    assert NtpTime(0, -1) < NtpTime(0)
    assert hash(NtpTime(3, 4)) == hash(NtpTime(3, 4))


def test_ntptime_conversions():
    t = NtpTime(1700000000, 123456789)

    assert t.timestamp() == pytest.approx(1700000000.123456789)
    assert t.to_datetime() == datetime(
        2023, 11, 14, 22, 13, 20, 123456, tzinfo=timezone.utc
    )
    assert str(t) == "2023-11-14T22:13:20.123456789Z"
    assert repr(t) == "NtpTime(1700000000, 123456789)"
    assert NtpTime.from_datetime(t.to_datetime()) == NtpTime(
        1700000000, 123456000
    )


@pytest.mark.parametrize("value", [float("nan"), float("inf"), float("-inf")])
def test_encode_non_finite_float(value):
    with pytest.raises(NtpEncodingError):
        encode_timestamp(value)


@pytest.mark.parametrize("seconds, nanoseconds", [(1.5, 0), (1, 0.5), ("1", 0)])
def test_ntptime_requires_integers(seconds, nanoseconds):
    with pytest.raises(TypeError):
        NtpTime(seconds, nanoseconds)
