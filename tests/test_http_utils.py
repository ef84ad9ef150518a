import io
import os
import sys
import unittest
import urllib.error


sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "src")))


from cnr.errors import AuthError, FetchError, TransientFetchError  # noqa: E402
from cnr.http_utils import HttpResponse, classify_upstream_error, with_query_params  # noqa: E402


def _http_error(code: int, body: bytes = b"") -> urllib.error.HTTPError:
    return urllib.error.HTTPError("https://api.example.com/x", code, "error", {}, io.BytesIO(body))


class TestHttpUtils(unittest.TestCase):
    def test_with_query_params_merges_and_drops_none(self) -> None:
        base = "https://example.com/api?x=1"
        url = with_query_params(base, {"x": "2", "y": "3", "z": None})
        self.assertIn("x=2", url)
        self.assertIn("y=3", url)
        self.assertNotIn("z=", url)

    def test_response_json(self) -> None:
        resp = HttpResponse(status=200, url="u", headers={}, body='{"ok": true, "名": "值"}'.encode("utf-8"))
        self.assertEqual(resp.json(), {"ok": True, "名": "值"})
        self.assertIn("ok", resp.text())


class TestClassifyUpstreamError(unittest.TestCase):
    def test_auth_status_codes(self) -> None:
        for code in (401, 403):
            err = classify_upstream_error(_http_error(code, b"expired"), provider="dropbox")
            self.assertIsInstance(err, AuthError)
            assert isinstance(err, AuthError)
            self.assertEqual(err.provider, "dropbox")
            self.assertIn("expired", err.detail)

    def test_transient_status_codes(self) -> None:
        for code in (429, 500, 502, 503, 504):
            self.assertIsInstance(classify_upstream_error(_http_error(code), provider="x"), TransientFetchError)

    def test_other_status_codes_are_fetch_errors(self) -> None:
        err = classify_upstream_error(_http_error(404), provider="clickup")
        self.assertIsInstance(err, FetchError)
        self.assertNotIsInstance(err, TransientFetchError)

    def test_network_errors_are_transient(self) -> None:
        for e in (urllib.error.URLError("no route"), TimeoutError("timed out"), ConnectionResetError("reset")):
            self.assertIsInstance(classify_upstream_error(e, provider="x"), TransientFetchError)

    def test_malformed_data_is_fetch_error(self) -> None:
        self.assertIsInstance(classify_upstream_error(ValueError("bad json"), provider="x"), FetchError)

    def test_already_classified_errors_pass_through(self) -> None:
        err = AuthError("slack", "invalid_auth")
        self.assertIs(classify_upstream_error(err, provider="x"), err)

    def test_unknown_errors_pass_through(self) -> None:
        err = RuntimeError("boom")
        self.assertIs(classify_upstream_error(err, provider="x"), err)


if __name__ == "__main__":
    unittest.main()
