import datetime

import pytest

import departures_proxy as dp


def test_round_trip():
    token = '"2024-01-15T08:30:00"'
    value = dp.decode_timestamp(token)
    assert value == datetime.datetime(2024, 1, 15, 8, 30, 0)
    assert dp.encode_timestamp(value) == token


def test_bare_round_trip_across_boundaries():
    for text in ("2024-02-29T23:59:59", "1999-12-31T00:00:00", "2030-07-01T12:05:09"):
        assert dp.format_timestamp(dp.parse_timestamp(text)) == text


def test_encode_drops_subseconds():
    value = datetime.datetime(2024, 1, 15, 8, 30, 0, 999999)
    assert dp.encode_timestamp(value) == '"2024-01-15T08:30:00"'


@pytest.mark.parametrize("token", ["", '"', "'", "x"])
def test_decode_short_input_fails(token):
    with pytest.raises(dp.TimestampFormatError):
        dp.decode_timestamp(token)


@pytest.mark.parametrize(
    "token",
    [
        '""',
        "2024-01-15T08:30:00",
        '"2024-01-15 08:30:00"',
        '"2024-01-15T08:30:00Z"',
        '"2024-01-15T08:30:00.123"',
        '"2024-1-15T08:30:00"',
        '"2024-13-15T08:30:00"',
        '"2024-02-30T08:30:00"',
        '"2024-01-15T25:00:00"',
        '"٢٠٢٤-01-15T08:30:00"',
        '"2024-01-15T08:٣٠:00"',
    ],
)
def test_decode_malformed_fails(token):
    with pytest.raises(dp.TimestampFormatError):
        dp.decode_timestamp(token)


def test_format_error_is_value_error():
    with pytest.raises(ValueError):
        dp.parse_timestamp("yesterday")


def test_parse_rejects_non_string():
    with pytest.raises(dp.TimestampFormatError):
        dp.parse_timestamp(1705307400)


def test_parse_rejects_non_ascii_digits():
    with pytest.raises(dp.TimestampFormatError):
        dp.parse_timestamp("٢٠٢٤-01-15T08:30:00")
