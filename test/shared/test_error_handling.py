import unittest

from fastapi import HTTPException
from fastapi.testclient import TestClient

from src.shared.errors import ConfigurationConflict, HostPolicyDenied, RateLimited
from src.shared.middleware import create_app


class TestErrorHandling(unittest.TestCase):
    def setUp(self):
        self.app = create_app()

        @self.app.get("/boom")
        def boom():
            raise HTTPException(status_code=400, detail="Invalid payload")

        @self.app.get("/crash")
        def crash():
            raise RuntimeError("unexpected")

        self.client = TestClient(self.app, raise_server_exceptions=False)

    def test_http_exception_plain_text(self):
        resp = self.client.get("/boom")
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.text, "Invalid payload")
        self.assertTrue(resp.headers["content-type"].startswith("text/plain"))

    def test_not_found_uses_status_phrase(self):
        resp = self.client.get("/missing")
        self.assertEqual(resp.status_code, 404)
        self.assertEqual(resp.text, "Not Found")

    def test_unhandled_exception_logged(self):
        with self.assertLogs("src.shared.errors", level="ERROR") as cm:
            resp = self.client.get("/crash")
        self.assertEqual(resp.status_code, 500)
        self.assertEqual(resp.text, "Internal Server Error")
        self.assertIn("path=/crash", cm.output[0])

    def test_docs_disabled(self):
        for path in ("/docs", "/redoc", "/openapi.json"):
            self.assertEqual(self.client.get(path).status_code, 404)


class TestErrorTypes(unittest.TestCase):
    def test_configuration_conflict_collects_errors(self):
        exc = ConfigurationConflict(["first", "second"])
        self.assertEqual(exc.errors, ["first", "second"])
        self.assertEqual(str(exc), "first; second")

    def test_denial_reason(self):
        exc = RateLimited("mta-sts.example.com", detail="too soon")
        self.assertEqual(exc.reason, "rate limited")
        self.assertEqual(str(exc), "mta-sts.example.com: rate limited (too soon)")
        self.assertIsInstance(exc, HostPolicyDenied)


if __name__ == "__main__":
    unittest.main()
