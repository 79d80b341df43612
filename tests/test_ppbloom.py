import pytest

from shadowrelay.ppbloom import BloomFilter, PingPongBloom


def test_bloom_add_then_contains():
    bloom = BloomFilter(100, 1e-6)
    assert b"nonce" not in bloom
    bloom.add(b"nonce")
    assert b"nonce" in bloom


def test_bloom_add_reports_presence():
    bloom = BloomFilter(100, 1e-6)
    assert bloom.add(b"abc") is False
    assert bloom.add(b"abc") is True


def test_bloom_no_false_negatives():
    bloom = BloomFilter(500, 1e-4)
    items = [i.to_bytes(4, "big") for i in range(500)]
    for item in items:
        bloom.add(item)
    assert all(item in bloom for item in items)


@pytest.mark.parametrize("entries,error", [(0, 0.01), (-5, 0.01), (10, 0.0), (10, 1.0)])
def test_bloom_invalid_parameters(entries, error):
    with pytest.raises(ValueError):
        BloomFilter(entries, error)


def test_pingpong_half_size():
    assert PingPongBloom(20, 1e-6).entries == 10
    assert PingPongBloom(21, 1e-6).entries == 10


def test_pingpong_rejects_too_small():
    with pytest.raises(ValueError):
        PingPongBloom(1, 1e-6)


def test_pingpong_check_after_add():
    pp = PingPongBloom(20, 1e-6)
    assert pp.check(b"salt") is False
    pp.add(b"salt")
    assert pp.check(b"salt") is True


def test_pingpong_rotation_expires_old_entries():
    pp = PingPongBloom(20, 1e-6)
    first = [b"a%d" % i for i in range(10)]
    second = [b"b%d" % i for i in range(10)]
    for item in first:
        pp.add(item)
    # first half is full; the second half is now active and the first survives
    assert all(pp.check(item) for item in first)
    for item in second:
        pp.add(item)
    # the first half has been cleared and reused
    assert not any(pp.check(item) for item in first)
    assert all(pp.check(item) for item in second)