"""Tests for the SQLite-backed key-value store and audit log."""

from concurrent.futures import ThreadPoolExecutor

from quote_intake.kv import AuditLog, KVStore


class TestKVStore:
    def test_put_and_get(self, kv):
        kv.put("greeting", "hallo")
        assert kv.get("greeting") == "hallo"
        assert kv.get("missing") is None

    def test_json_round_trip(self, kv):
        kv.put_json("payload", {"request_id": "abc", "n": 3})
        assert kv.get_json("payload") == {"request_id": "abc", "n": 3}
        assert kv.get_json("missing") is None

    def test_expired_entry_reads_as_absent(self, kv, clock):
        kv.put("short", "lived", ttl_seconds=10)
        clock.advance(9)
        assert kv.get("short") == "lived"
        clock.advance(1)
        assert kv.get("short") is None

    def test_put_replaces_value_and_ttl(self, kv, clock):
        kv.put("key", "one", ttl_seconds=5)
        kv.put("key", "two")
        clock.advance(3600)
        assert kv.get("key") == "two"

    def test_put_if_absent_claims_once(self, kv):
        assert kv.put_if_absent("claim", "first") is True
        assert kv.put_if_absent("claim", "second") is False
        assert kv.get("claim") == "first"

    def test_put_if_absent_replaces_expired_entry(self, kv, clock):
        assert kv.put_if_absent("claim", "first", ttl_seconds=60)
        clock.advance(61)
        assert kv.put_if_absent("claim", "second", ttl_seconds=60)
        assert kv.get("claim") == "second"

    def test_delete(self, kv):
        kv.put("key", "value")
        kv.delete("key")
        assert kv.get("key") is None

    def test_ttl_remaining(self, kv, clock):
        kv.put("key", "value", ttl_seconds=60)
        clock.advance(15)
        assert kv.ttl_remaining("key") == 45
        kv.put("forever", "value")
        assert kv.ttl_remaining("forever") is None
        assert kv.ttl_remaining("missing") is None

    def test_purge_expired(self, kv, clock):
        kv.put("old", "x", ttl_seconds=10)
        kv.put("new", "y", ttl_seconds=100)
        kv.put("forever", "z")
        clock.advance(50)

        assert kv.purge_expired() == 1
        assert kv.get("new") == "y"
        assert kv.get("forever") == "z"


class TestIncrementIfBelow:
    def test_counts_up_to_limit(self, kv):
        results = [kv.increment_if_below("counter", 3, ttl_seconds=60) for _ in range(5)]
        assert results == [1, 2, 3, None, None]
        assert kv.get_counter("counter") == 3

    def test_denied_calls_do_not_bump_counter(self, kv):
        for _ in range(10):
            kv.increment_if_below("counter", 2, ttl_seconds=60)
        assert kv.get_counter("counter") == 2

    def test_counter_restarts_after_expiry(self, kv, clock):
        kv.increment_if_below("counter", 1, ttl_seconds=60)
        assert kv.increment_if_below("counter", 1, ttl_seconds=60) is None
        clock.advance(60)
        assert kv.increment_if_below("counter", 1, ttl_seconds=60) == 1

    def test_later_increments_keep_original_expiry(self, kv, clock):
        kv.increment_if_below("counter", 10, ttl_seconds=60)
        clock.advance(50)
        kv.increment_if_below("counter", 10, ttl_seconds=60)
        clock.advance(10)
        assert kv.get_counter("counter") == 0

    def test_zero_limit_always_denies(self, kv):
        assert kv.increment_if_below("counter", 0, ttl_seconds=60) is None

    def test_concurrent_increments_are_not_lost(self, db_path, clock):
        """N concurrent callers with limit M get exactly min(N, M) allows."""
        store = KVStore(db_path, clock=clock)
        calls, limit = 24, 10

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(
                pool.map(
                    lambda _: store.increment_if_below("shared", limit, ttl_seconds=600),
                    range(calls),
                )
            )

        allowed = [r for r in results if r is not None]
        assert len(allowed) == min(calls, limit)
        assert sorted(allowed) == list(range(1, limit + 1))
        assert store.get_counter("shared") == limit


class TestAuditLog:
    def test_append_and_recent_newest_first(self, audit, clock):
        audit.append("abuse_rejected", "first")
        clock.advance(1)
        audit.append("triage_failed", "second", request_id="req1", payload={"a": 1})

        entries = audit.recent()
        assert [e.message for e in entries] == ["second", "first"]
        assert entries[0].request_id == "req1"
        assert entries[0].payload == {"a": 1}
        assert entries[1].payload is None

    def test_filter_by_kind(self, audit):
        audit.append("abuse_rejected", "a")
        audit.append("triage_failed", "b")
        assert [e.message for e in audit.recent(kind="triage_failed")] == ["b"]

    def test_evicts_beyond_max_entries(self, db_path, clock):
        log = AuditLog(db_path, max_entries=3, clock=clock)
        for i in range(5):
            log.append("event", f"entry {i}")
            clock.advance(1)

        assert [e.message for e in log.recent()] == ["entry 4", "entry 3", "entry 2"]

    def test_evicts_entries_past_ttl(self, db_path, clock):
        log = AuditLog(db_path, ttl_seconds=100, clock=clock)
        log.append("event", "old")
        clock.advance(101)
        log.append("event", "new")

        assert [e.message for e in log.recent()] == ["new"]

    def test_to_dict(self, audit):
        entry_id = audit.append("event", "hello", payload={"x": "y"})
        data = audit.recent()[0].to_dict()
        assert data["entry_id"] == entry_id
        assert data["kind"] == "event"
        assert data["payload"] == {"x": "y"}
