from flowscan.utils.time import StreamClock, ms_to_ns, normalize_epoch_ns, ns_to_ms, utc_dt_ms


def test_normalize_epoch_units():
    s = 1_700_000_000
    assert normalize_epoch_ns(s) == s * 1_000_000_000
    assert normalize_epoch_ns(s * 1_000) == s * 1_000_000_000
    assert normalize_epoch_ns(s * 1_000_000) == s * 1_000_000_000
    assert normalize_epoch_ns(s * 1_000_000_000) == s * 1_000_000_000


def test_ns_ms_conversions():
    assert ns_to_ms(1_700_000_000_123_456_789) == 1_700_000_000_123
    assert ms_to_ns(1_700_000_000_123) == 1_700_000_000_123_000_000
    assert utc_dt_ms(0).year == 1970


def test_stream_clock_uses_wall_until_first_event():
    clock = StreamClock(wall=lambda: 42)
    assert clock.now_ms() == 42
    clock.observe_ms(1_000)
    assert clock.now_ms() == 1_000


def test_stream_clock_never_rewinds():
    clock = StreamClock(wall=lambda: 0)
    clock.observe_ms(5_000)
    # late event
    assert clock.observe_ms(4_000) == 5_000
    assert clock.observe_ns(6_000 * 1_000_000) == 6_000
    clock.reset()
    assert clock.now_ms() == 0
