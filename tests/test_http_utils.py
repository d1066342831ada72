import unittest

from incpoll.errors import AuthError, TransientHttpError, ValidationError
from incpoll.http_utils import HttpResponse, classify_http_status, with_query_params


class TestHttpUtils(unittest.TestCase):
    def test_with_query_params_skips_none_and_keeps_existing(self) -> None:
        url = with_query_params("https://x/api?a=1", {"limit": "50", "after": None})
        self.assertEqual(url, "https://x/api?a=1&limit=50")

        url2 = with_query_params("https://x/api", {"limit": "50", "after": "tok"})
        self.assertEqual(url2, "https://x/api?limit=50&after=tok")

    def test_classify_auth(self) -> None:
        for status in (401, 403):
            err = classify_http_status(status, url="https://x")
            self.assertIsInstance(err, AuthError)
            self.assertEqual(err.status, status)

    def test_classify_transient_with_retry_after(self) -> None:
        err = classify_http_status(429, url="https://x", retry_after="7")
        self.assertIsInstance(err, TransientHttpError)
        self.assertEqual(err.status, 429)
        self.assertEqual(err.retry_after, 7.0)

        err2 = classify_http_status(507, url="https://x", retry_after="Wed, 21 Oct 2015 07:28:00 GMT")
        self.assertIsInstance(err2, TransientHttpError)
        self.assertIsNone(err2.retry_after)

    def test_classify_other_4xx_is_validation(self) -> None:
        err = classify_http_status(400, url="https://x", body_prefix="bad limit")
        self.assertIsInstance(err, ValidationError)
        self.assertIsInstance(err, ValueError)
        self.assertIn("bad limit", str(err))

    def test_response_json(self) -> None:
        resp = HttpResponse(status=200, url="https://x", headers={}, body=b'{"ok": true}')
        self.assertEqual(resp.json(), {"ok": True})
        self.assertEqual(resp.text(), '{"ok": true}')


if __name__ == "__main__":
    unittest.main()
