import unittest
from unittest.mock import Mock


class SqlKeyValueStoreTests(unittest.TestCase):
    def setUp(self):
        from fakes import FakeClock

        from issue_relay.models.base import create_database
        from issue_relay.services.kv_store import SqlKeyValueStore

        self.clock = FakeClock()
        self.store = SqlKeyValueStore(create_database("sqlite://"), clock=self.clock)

    def test_set_if_absent_is_first_writer_wins(self):
        self.assertTrue(self.store.set_if_absent("k", "first", 60))
        self.assertFalse(self.store.set_if_absent("k", "second", 60))
        self.assertEqual(self.store.get("k"), "first")

    def test_expired_key_can_be_claimed_again(self):
        self.store.set_if_absent("k", "first", 60)
        self.clock.advance(seconds=61)

        self.assertIsNone(self.store.get("k"))
        self.assertTrue(self.store.set_if_absent("k", "second", 60))
        self.assertEqual(self.store.get("k"), "second")

    def test_set_delete_and_purge(self):
        self.store.set("plain", "v")
        self.store.set("short", "v", ttl_seconds=10)
        self.assertEqual(self.store.get("plain"), "v")

        self.assertTrue(self.store.delete("plain"))
        self.assertFalse(self.store.delete("plain"))

        self.clock.advance(seconds=11)
        self.assertEqual(self.store.purge_expired(), 1)
        self.assertTrue(self.store.ping())


class MemoryKeyValueStoreTests(unittest.TestCase):
    def test_claim_and_expiry(self):
        from fakes import FakeClock

        from issue_relay.services.kv_store import MemoryKeyValueStore

        clock = FakeClock()
        store = MemoryKeyValueStore(clock=clock)

        self.assertTrue(store.set_if_absent("k", "v", 5))
        self.assertFalse(store.set_if_absent("k", "v", 5))
        clock.advance(seconds=5)
        self.assertTrue(store.set_if_absent("k", "v", 5))

    def test_concurrent_claims_have_one_winner(self):
        import threading

        from issue_relay.services.kv_store import MemoryKeyValueStore

        store = MemoryKeyValueStore()
        results = []
        barrier = threading.Barrier(8)

        def claim():
            barrier.wait()
            results.append(store.set_if_absent("same", "v", 60))

        threads = [threading.Thread(target=claim) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        self.assertEqual(results.count(True), 1)


class RedisKeyValueStoreTests(unittest.TestCase):
    def test_uses_set_nx_ex_with_prefix(self):
        from issue_relay.services.kv_store import RedisKeyValueStore

        client = Mock()
        client.set.return_value = True
        store = RedisKeyValueStore(client, prefix="relay:")

        self.assertTrue(store.set_if_absent("dedup:abc", "v", 300))
        client.set.assert_called_once_with("relay:dedup:abc", "v", ex=300, nx=True)

        client.set.return_value = None
        self.assertFalse(store.set_if_absent("dedup:abc", "v", 300))

    def test_redis_errors_become_unavailable(self):
        import redis

        from issue_relay.services.errors import KeyValueStoreUnavailable
        from issue_relay.services.kv_store import RedisKeyValueStore

        client = Mock()
        client.set.side_effect = redis.exceptions.ConnectionError("down")
        client.ping.side_effect = redis.exceptions.ConnectionError("down")
        store = RedisKeyValueStore(client)

        with self.assertRaises(KeyValueStoreUnavailable):
            store.set_if_absent("k", "v", 60)
        self.assertFalse(store.ping())


if __name__ == "__main__":
    unittest.main()
