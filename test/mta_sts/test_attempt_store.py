import os
import tempfile
import time
import unittest
from unittest.mock import MagicMock, patch

from redis.exceptions import ConnectionError as RedisConnError

from src.mta_sts import attempt_store
from src.mta_sts.attempt_store import (
    FileAttemptStore,
    RedisAttemptStore,
    SqliteAttemptStore,
    create_attempt_store,
    sanitize_hostname,
)
from src.shared.config_schema import ServerConfig
from src.shared.errors import StorageFailure
from src.shared.redis_client import RedisConnectionError


class TestSanitizeHostname(unittest.TestCase):
    def test_normalizes_case_and_trailing_dot(self):
        self.assertEqual(sanitize_hostname("MTA-STS.Example.COM."), "mta-sts.example.com")

    def test_rejects_path_traversal(self):
        for name in ("../etc/passwd", "a/b", "..", "a\\b", ".hidden", "a..b", "x\x00y"):
            with self.assertRaises(ValueError, msg=name):
                sanitize_hostname(name)

    def test_rejects_empty_and_oversized(self):
        with self.assertRaises(ValueError):
            sanitize_hostname("")
        with self.assertRaises(ValueError):
            sanitize_hostname("a" * 64 + ".example.com")
        with self.assertRaises(ValueError):
            sanitize_hostname(".".join(["abcdefgh"] * 40))

    def test_rejects_other_characters(self):
        with self.assertRaises(ValueError):
            sanitize_hostname("bad host.example.com")


class _StoreContract:
    """Behavior every attempt store backend shares."""

    def make_store(self):
        raise NotImplementedError

    def test_unknown_host_has_no_record(self):
        self.assertIsNone(self.store.get_last_attempt("mta-sts.example.com"))

    def test_record_then_read(self):
        now = time.time()
        self.store.record_attempt("mta-sts.example.com", now)
        self.assertAlmostEqual(self.store.get_last_attempt("mta-sts.example.com"), now, places=3)

    def test_record_overwrites(self):
        self.store.record_attempt("mta-sts.example.com", 1000.0)
        self.store.record_attempt("mta-sts.example.com", 2000.0)
        self.assertAlmostEqual(self.store.get_last_attempt("mta-sts.example.com"), 2000.0)

    def test_keys_are_normalized(self):
        self.store.record_attempt("MTA-STS.example.com.", 1500.0)
        self.assertAlmostEqual(self.store.get_last_attempt("mta-sts.example.com"), 1500.0)

    def test_invalid_hostname_rejected(self):
        with self.assertRaises(ValueError):
            self.store.record_attempt("../../escape", 1.0)


class TestFileAttemptStore(_StoreContract, unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.directory = os.path.join(self.tmp.name, "certs", "hosts")
        self.store = FileAttemptStore(self.directory)

    def tearDown(self):
        self.tmp.cleanup()

    def test_directory_created_lazily(self):
        self.assertFalse(os.path.exists(self.directory))
        self.store.get_last_attempt("mta-sts.example.com")
        self.assertFalse(os.path.exists(self.directory))
        self.store.record_attempt("mta-sts.example.com", 1000.0)
        self.assertTrue(os.path.isdir(self.directory))
        self.assertTrue(os.path.isfile(os.path.join(self.directory, "mta-sts.example.com")))

    def test_survives_new_instance(self):
        self.store.record_attempt("mta-sts.example.com", 1234.0)
        reopened = FileAttemptStore(self.directory)
        self.assertAlmostEqual(reopened.get_last_attempt("mta-sts.example.com"), 1234.0)

    def test_unwritable_location_is_storage_failure(self):
        blocker = os.path.join(self.tmp.name, "blocker")
        with open(blocker, "w", encoding="utf-8"):
            pass
        store = FileAttemptStore(os.path.join(blocker, "hosts"))
        with self.assertRaises(StorageFailure):
            store.record_attempt("mta-sts.example.com", 1.0)

    def test_stat_error_is_storage_failure(self):
        with patch("src.mta_sts.attempt_store.os.stat", side_effect=PermissionError("denied")):
            with self.assertRaises(StorageFailure):
                self.store.get_last_attempt("mta-sts.example.com")


class TestSqliteAttemptStore(_StoreContract, unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.db_path = os.path.join(self.tmp.name, "state", "hosts.db")
        self.store = SqliteAttemptStore(self.db_path)

    def tearDown(self):
        self.tmp.cleanup()

    def test_survives_new_instance(self):
        self.store.record_attempt("mta-sts.example.com", 4321.0)
        reopened = SqliteAttemptStore(self.db_path)
        self.assertAlmostEqual(reopened.get_last_attempt("mta-sts.example.com"), 4321.0)

    def test_unopenable_database_is_storage_failure(self):
        store = SqliteAttemptStore(self.tmp.name)  # a directory, not a file
        with self.assertRaises(StorageFailure):
            store.get_last_attempt("mta-sts.example.com")


class TestRedisAttemptStore(unittest.TestCase):
    def setUp(self):
        self.redis = MagicMock()
        self.store = RedisAttemptStore(client=self.redis)

    def test_missing_key(self):
        self.redis.get.return_value = None
        self.assertIsNone(self.store.get_last_attempt("mta-sts.example.com"))
        self.redis.get.assert_called_once_with("mta_sts:host_attempt:mta-sts.example.com")

    def test_record_and_read(self):
        self.store.record_attempt("MTA-STS.example.com", 1700000000.5)
        self.redis.set.assert_called_once_with(
            "mta_sts:host_attempt:mta-sts.example.com", "1700000000.5"
        )
        self.redis.get.return_value = "1700000000.5"
        self.assertEqual(self.store.get_last_attempt("mta-sts.example.com"), 1700000000.5)

    def test_redis_errors_become_storage_failures(self):
        self.redis.get.side_effect = RedisConnError("Connection lost")
        with self.assertRaises(StorageFailure):
            self.store.get_last_attempt("mta-sts.example.com")
        self.redis.set.side_effect = RedisConnError("Connection lost")
        with self.assertRaises(StorageFailure):
            self.store.record_attempt("mta-sts.example.com", 1.0)

    def test_corrupt_value(self):
        self.redis.get.return_value = "yesterday"
        with self.assertRaises(StorageFailure):
            self.store.get_last_attempt("mta-sts.example.com")

    def test_connection_is_lazy(self):
        with patch.object(attempt_store, "get_redis_connection") as mock_connect:
            store = RedisAttemptStore(host="redis", port=6380, db_number=4)
            mock_connect.assert_not_called()
            mock_connect.return_value.get.return_value = None
            store.get_last_attempt("mta-sts.example.com")
            store.get_last_attempt("mta-sts.example.org")
            mock_connect.assert_called_once_with(
                host="redis", port=6380, db_number=4, password_file=None
            )

    def test_unreachable_redis(self):
        with patch.object(
            attempt_store, "get_redis_connection", side_effect=RedisConnectionError("down")
        ):
            store = RedisAttemptStore()
            with self.assertRaises(StorageFailure):
                store.get_last_attempt("mta-sts.example.com")


class TestCreateAttemptStore(unittest.TestCase):
    def _config(self, **store):
        return ServerConfig.model_validate(
            {
                "host_policy": {"my_real_host": "sts.example.net"},
                "sts_policy": {"mx": ("mx.example.com",)},
                "tls": {"certificate_dir": "/var/lib/sts"},
                "attempt_store": store,
            }
        )

    def test_default_is_file_store_under_certificate_dir(self):
        store = create_attempt_store(self._config())
        self.assertIsInstance(store, FileAttemptStore)
        self.assertEqual(store.directory, "/var/lib/sts/hosts")

    def test_sqlite(self):
        store = create_attempt_store(self._config(backend="sqlite"))
        self.assertIsInstance(store, SqliteAttemptStore)
        self.assertEqual(store.db_path, "/var/lib/sts/hosts.db")

    def test_redis(self):
        store = create_attempt_store(self._config(backend="redis", redis_host="cache"))
        self.assertIsInstance(store, RedisAttemptStore)
        self.assertEqual(store.host, "cache")


if __name__ == "__main__":
    unittest.main()
