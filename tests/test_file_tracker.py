import os

from taskgate.config_loader import FileTrackerConfig
from taskgate.file_tracker import FileContextTracker


class Clock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def make_tracker(tmp_path, clock=None, **overrides):
    return FileContextTracker(tmp_path, FileTrackerConfig(**overrides), clock=clock or Clock())


def write(tmp_path, name: str, text: str):
    path = tmp_path / name
    path.write_text(text)
    return path


def test_missing_file_must_be_read(tmp_path):
    tracker = make_tracker(tmp_path)
    decision = tracker.should_read_file("nope.py")
    assert decision.should_read is True
    assert "does not exist" in decision.reason


def test_uncached_file_must_be_read(tmp_path):
    write(tmp_path, "a.py", "print(1)\n")
    tracker = make_tracker(tmp_path)
    decision = tracker.should_read_file("a.py")
    assert decision.should_read is True
    assert decision.reason == "No cached content available"


def test_recent_read_is_served_from_cache(tmp_path):
    write(tmp_path, "a.py", "print(1)\n")
    clock = Clock()
    tracker = make_tracker(tmp_path, clock)
    assert tracker.cache_file_content("a.py", "print(1)\n") is True

    clock.now += 10
    decision = tracker.should_read_file("a.py")

    assert decision.should_read is False
    assert decision.reason == "Recently read - using cached content"
    assert decision.cached_content == "print(1)\n"
    assert decision.is_partial_read is False


def test_older_entry_is_still_valid_until_ttl(tmp_path):
    write(tmp_path, "a.py", "x = 1\n")
    clock = Clock()
    tracker = make_tracker(tmp_path, clock)
    tracker.cache_file_content("a.py", "x = 1\n")

    clock.now += 120
    decision = tracker.should_read_file("a.py")
    assert decision.should_read is False
    assert decision.reason == "Valid cached content available"

    clock.now += 600
    decision = tracker.should_read_file("a.py")
    assert decision.should_read is True
    assert decision.reason == "Cache expired"


def test_modified_file_is_reread(tmp_path):
    path = write(tmp_path, "a.py", "x = 1\n")
    clock = Clock()
    tracker = make_tracker(tmp_path, clock)
    tracker.cache_file_content("a.py", "x = 1\n")

    stat = path.stat()
    os.utime(path, ns=(stat.st_atime_ns, stat.st_mtime_ns + 5_000_000_000))
    clock.now += 5

    decision = tracker.should_read_file("a.py")
    assert decision.should_read is True
    assert decision.reason == "File has been modified"


def test_windowed_reads_are_cached_separately(tmp_path):
    write(tmp_path, "big.py", "a\nb\nc\nd\n")
    tracker = make_tracker(tmp_path)
    tracker.cache_file_content("big.py", "b\nc\n", limit=2, offset=1)

    assert tracker.should_read_file("big.py").should_read is True
    windowed = tracker.should_read_file("big.py", limit=2, offset=1)
    assert windowed.should_read is False
    assert windowed.is_partial_read is True
    assert tracker.should_read_file("big.py", limit=2, offset=2).should_read is True

    # Offset zero with no limit is the full read
    tracker.cache_file_content("big.py", "a\nb\nc\nd\n", offset=0)
    assert tracker.should_read_file("big.py").should_read is False
    assert tracker.has_any_cached_content("big.py")
    assert len(tracker) == 2


def test_oversized_content_is_not_cached(tmp_path):
    write(tmp_path, "huge.txt", "x")
    tracker = make_tracker(tmp_path, max_file_size=10)
    assert tracker.cache_file_content("huge.txt", "x" * 11) is False
    assert len(tracker) == 0


def test_full_cache_evicts_oldest_quarter(tmp_path):
    clock = Clock()
    tracker = make_tracker(tmp_path, clock)
    for i in range(50):
        write(tmp_path, f"f{i}.py", str(i))
        tracker.cache_file_content(f"f{i}.py", str(i))
        clock.now += 1

    write(tmp_path, "extra.py", "extra")
    tracker.cache_file_content("extra.py", "extra")

    # ceil(50 * 0.25) = 13 evicted, then the new entry added
    assert len(tracker) == 38
    cached = set(tracker.get_cached_files())
    assert str(tmp_path.resolve() / "f0.py") not in cached
    assert str(tmp_path.resolve() / "f12.py") not in cached
    assert str(tmp_path.resolve() / "f13.py") in cached
    assert str(tmp_path.resolve() / "extra.py") in cached


def test_rewriting_existing_key_does_not_evict(tmp_path):
    tracker = make_tracker(tmp_path, max_entries=2)
    write(tmp_path, "a.py", "a")
    write(tmp_path, "b.py", "b")
    tracker.cache_file_content("a.py", "a")
    tracker.cache_file_content("b.py", "b")
    tracker.cache_file_content("a.py", "a2")
    assert len(tracker) == 2
    assert tracker.get_cached_content("a.py") == "a2"


def test_clear_cache_and_stats(tmp_path):
    clock = Clock()
    tracker = make_tracker(tmp_path, clock)
    write(tmp_path, "a.py", "aaaa")
    write(tmp_path, "b.py", "bb")
    tracker.cache_file_content("a.py", "aaaa")
    tracker.cache_file_content("a.py", "aa", limit=1)
    clock.now += 10
    tracker.cache_file_content("b.py", "bb")

    stats = tracker.get_cache_stats()
    assert stats["total_files"] == 3
    assert stats["total_size"] == 8
    assert stats["oldest_entry"] == 1000.0
    assert stats["newest_entry"] == 1010.0

    assert tracker.clear_cache("a.py") == 2
    assert tracker.get_cached_files() == [str(tmp_path.resolve() / "b.py")]
    assert tracker.clear_cache() == 1
    assert len(tracker) == 0


def test_entry_expires_exactly_at_ttl(tmp_path):
    write(tmp_path, "a.py", "x = 1\n")
    clock = Clock()
    tracker = make_tracker(tmp_path, clock)
    tracker.cache_file_content("a.py", "x = 1\n")

    clock.now += 600
    decision = tracker.should_read_file("a.py")
    assert decision.should_read is True
    assert decision.reason == "Cache expired"
    assert tracker.get_cached_content("a.py") is None
    assert tracker.has_any_cached_content("a.py") is False
