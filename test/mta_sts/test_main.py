import io
import unittest
from contextlib import redirect_stderr
from unittest.mock import AsyncMock, patch

from src.mta_sts.__main__ import main


class TestMain(unittest.TestCase):
    def test_missing_policy_source_exits_with_usage_error(self):
        stderr = io.StringIO()
        with redirect_stderr(stderr):
            code = main(["--domain", "example.com"])
        self.assertEqual(code, 2)
        self.assertIn("Must specify either --mirror_sts_from or --sts_mx.", stderr.getvalue())

    def test_missing_host_policy_exits_with_usage_error(self):
        stderr = io.StringIO()
        with redirect_stderr(stderr):
            code = main(["--sts_mx", "mx.example.com"])
        self.assertEqual(code, 2)
        self.assertIn("Must specify --domain or --my_real_host for safety.", stderr.getvalue())

    @patch("src.mta_sts.__main__.configure_logging")
    @patch("src.mta_sts.__main__.serve", new_callable=AsyncMock)
    def test_valid_configuration_serves(self, mock_serve, mock_logging):
        code = main(["--http", "--sts_mx", "mx.example.com", "--log_level", "DEBUG"])
        self.assertEqual(code, 0)
        config = mock_serve.await_args.args[0]
        self.assertTrue(config.tls.serve_http)
        self.assertEqual(config.sts_policy.mx, ("mx.example.com",))
        self.assertEqual(mock_logging.call_args.args[0].log_level, "DEBUG")

    @patch("src.mta_sts.__main__.configure_logging")
    @patch("src.mta_sts.__main__.serve", new_callable=AsyncMock)
    def test_bind_failure(self, mock_serve, _mock_logging):
        mock_serve.side_effect = OSError("address already in use")
        with self.assertLogs("src.mta_sts.__main__", level="ERROR"):
            code = main(["--http", "--sts_mx", "mx.example.com"])
        self.assertEqual(code, 1)


if __name__ == "__main__":
    unittest.main()
