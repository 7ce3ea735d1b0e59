import random
import threading

import pytest

from toolchat.errors import NoCredentialsError
from toolchat.providers.credentials import RoundRobinRotation, load_credentials, parse_credentials


def test_parse_skips_comments_and_blank_lines():
    text = """
# production keys
AIzaKeyOne11111
// retired
AIzaKeyTwo22222   // shared with CI

"""
    assert parse_credentials(text) == ["AIzaKeyOne11111", "AIzaKeyTwo22222"]


def test_load_missing_file_returns_empty(tmp_path):
    assert load_credentials(tmp_path / "missing.txt") == []


def test_load_reads_file(tmp_path):
    path = tmp_path / "keys.txt"
    path.write_text("k1-aaaaa\nk2-bbbbb\n", encoding="utf-8")
    assert load_credentials(path) == ["k1-aaaaa", "k2-bbbbb"]


def test_round_robin_wraps_from_start_offset():
    rotation = RoundRobinRotation(["a", "b", "c"], start=1)
    assert [rotation.next_key() for _ in range(5)] == ["b", "c", "a", "b", "c"]


def test_random_start_is_seedable():
    first = RoundRobinRotation(["a", "b", "c", "d"], rng=random.Random(3))
    second = RoundRobinRotation(["a", "b", "c", "d"], rng=random.Random(3))
    assert first.next_key() == second.next_key()


def test_independent_rotations_do_not_share_state():
    one = RoundRobinRotation(["a", "b"], start=0)
    two = RoundRobinRotation(["a", "b"], start=0)
    one.next_key()
    assert two.next_key() == "a"


def test_empty_pool_raises():
    with pytest.raises(NoCredentialsError):
        RoundRobinRotation([]).next_key()


def test_concurrent_callers_get_every_key_equally():
    keys = [f"key-{i:05d}" for i in range(4)]
    rotation = RoundRobinRotation(keys, start=0)
    seen: list[str] = []
    lock = threading.Lock()

    def worker():
        for _ in range(100):
            key = rotation.next_key()
            with lock:
                seen.append(key)

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert {k: seen.count(k) for k in keys} == {k: 100 for k in keys}


def test_fingerprints_never_expose_full_keys():
    rotation = RoundRobinRotation(["AIzaSecretValue98765"], start=0)
    assert rotation.fingerprints == ["...98765"]
    assert len(rotation) == 1
