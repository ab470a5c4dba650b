import socketserver
import threading
import time
import unittest
from unittest import mock

import requests

from daysync.errors import ResourceLimitError, UpstreamFetchError, ValidationError
from daysync.ics_proxy import IcsProxy, is_blocked_address, validate_feed_url
from daysync.models import ProxyConfig

PUBLIC_IP = "93.184.216.34"


def public_resolver(_host: str) -> list[str]:
    return [PUBLIC_IP]


def fake_response(status: int = 200, chunks=None, headers=None, location: str | None = None) -> mock.Mock:
    response = mock.Mock()
    response.status_code = status
    response.headers = dict(headers or {})
    if location is not None:
        response.headers["Location"] = location
    response.is_redirect = location is not None
    response.url = "https://calendar.example.com/feed.ics"
    response.iter_content.return_value = iter(chunks or [])
    return response


class ValidateFeedUrlTests(unittest.TestCase):
    def test_missing_url(self) -> None:
        with self.assertRaisesRegex(ValidationError, "Missing url"):
            validate_feed_url("", public_resolver)

    def test_http_rejected(self) -> None:
        with self.assertRaisesRegex(ValidationError, "Only https"):
            validate_feed_url("http://calendar.example.com/feed.ics", public_resolver)

    def test_localhost_rejected(self) -> None:
        with self.assertRaisesRegex(ValidationError, "Host not allowed"):
            validate_feed_url("https://localhost/feed.ics", public_resolver)
        with self.assertRaisesRegex(ValidationError, "Host not allowed"):
            validate_feed_url("https://api.localhost/feed.ics", public_resolver)

    def test_private_literal_rejected(self) -> None:
        with self.assertRaisesRegex(ValidationError, "Private IPs"):
            validate_feed_url("https://10.0.0.5/feed.ics", public_resolver)
        with self.assertRaisesRegex(ValidationError, "Private IPs"):
            validate_feed_url("https://[::1]/feed.ics", public_resolver)

    def test_hostname_resolving_to_private_rejected(self) -> None:
        with self.assertRaisesRegex(ValidationError, "Private IPs"):
            validate_feed_url("https://sneaky.example.com/feed.ics", lambda _host: [PUBLIC_IP, "192.168.1.4"])

    def test_public_host_accepted(self) -> None:
        url = "https://calendar.example.com/feed.ics?token=abc"
        self.assertEqual(validate_feed_url(url, public_resolver), url)

    def test_malformed_port(self) -> None:
        with self.assertRaisesRegex(ValidationError, "Invalid url"):
            validate_feed_url("https://calendar.example.com:99999/feed.ics", public_resolver)

    def test_blocked_address_ranges(self) -> None:
        self.assertTrue(is_blocked_address("127.0.0.1"))
        self.assertTrue(is_blocked_address("169.254.169.254"))
        self.assertTrue(is_blocked_address("172.20.0.1"))
        self.assertTrue(is_blocked_address("fd00::1"))
        self.assertTrue(is_blocked_address("fe80::1"))
        self.assertTrue(is_blocked_address("::ffff:10.1.2.3"))
        self.assertTrue(is_blocked_address("0.0.0.0"))
        self.assertFalse(is_blocked_address("172.32.0.1"))
        self.assertFalse(is_blocked_address(PUBLIC_IP))


class IcsProxyFetchTests(unittest.TestCase):
    def _proxy(self, session: mock.Mock, **config) -> IcsProxy:
        return IcsProxy(ProxyConfig(**config), session=session, resolver=public_resolver)

    def test_returns_calendar_text(self) -> None:
        session = mock.Mock()
        session.get.return_value = fake_response(chunks=[b"BEGIN:VCALENDAR\r\n", b"END:VCALENDAR\r\n"])

        feed = self._proxy(session).fetch("https://calendar.example.com/feed.ics")

        self.assertEqual(feed.text, "BEGIN:VCALENDAR\r\nEND:VCALENDAR\r\n")
        self.assertEqual(feed.media_type, "text/calendar; charset=utf-8")
        kwargs = session.get.call_args.kwargs
        self.assertFalse(kwargs["allow_redirects"])
        self.assertTrue(kwargs["stream"])
        session.get.return_value.close.assert_called()

    def test_non_2xx_is_upstream_error(self) -> None:
        session = mock.Mock()
        session.get.return_value = fake_response(status=404)
        with self.assertRaises(UpstreamFetchError) as ctx:
            self._proxy(session).fetch("https://calendar.example.com/feed.ics")
        self.assertEqual(ctx.exception.status_code, 502)

    def test_declared_length_over_cap(self) -> None:
        session = mock.Mock()
        session.get.return_value = fake_response(headers={"Content-Length": str(6 * 1024 * 1024)})
        with self.assertRaises(ResourceLimitError):
            self._proxy(session).fetch("https://calendar.example.com/feed.ics")

    def test_streamed_body_over_cap_without_length(self) -> None:
        chunk = b"x" * (1024 * 1024)
        session = mock.Mock()
        session.get.return_value = fake_response(chunks=[chunk] * 6)
        with self.assertRaises(ResourceLimitError) as ctx:
            self._proxy(session).fetch("https://calendar.example.com/feed.ics")
        self.assertEqual(ctx.exception.status_code, 413)

    def test_redirect_to_private_address_rejected(self) -> None:
        session = mock.Mock()
        session.get.return_value = fake_response(status=302, location="https://10.0.0.5/feed.ics")
        with self.assertRaisesRegex(ValidationError, "Private IPs"):
            self._proxy(session).fetch("https://calendar.example.com/feed.ics")
        self.assertEqual(session.get.call_count, 1)

    def test_redirect_followed_when_allowed(self) -> None:
        session = mock.Mock()
        session.get.side_effect = [
            fake_response(status=301, location="/moved.ics"),
            fake_response(chunks=[b"BEGIN:VCALENDAR\r\nEND:VCALENDAR\r\n"]),
        ]
        feed = self._proxy(session).fetch("https://calendar.example.com/feed.ics")
        self.assertIn("VCALENDAR", feed.text)
        self.assertEqual(session.get.call_args_list[1].args[0], "https://calendar.example.com/moved.ics")

    def test_too_many_redirects(self) -> None:
        session = mock.Mock()
        session.get.side_effect = lambda *args, **kwargs: fake_response(status=302, location="/again.ics")
        with self.assertRaisesRegex(UpstreamFetchError, "Too many redirects"):
            self._proxy(session, max_redirects=2).fetch("https://calendar.example.com/feed.ics")
        self.assertEqual(session.get.call_count, 3)

    def test_deadline_exceeded_while_streaming(self) -> None:
        ticks = iter([0.0, 1.0, 11.0, 12.0])
        session = mock.Mock()
        session.get.return_value = fake_response(chunks=[b"a", b"b"])
        proxy = IcsProxy(ProxyConfig(), session=session, resolver=public_resolver, clock=lambda: next(ticks))
        with self.assertRaisesRegex(UpstreamFetchError, "timed out"):
            proxy.fetch("https://calendar.example.com/feed.ics")


class _TrickleHandler(socketserver.BaseRequestHandler):
    def handle(self) -> None:
        self.request.recv(65536)
        self.request.sendall(
            b"HTTP/1.1 200 OK\r\nContent-Type: text/calendar\r\nContent-Length: 100000\r\n\r\n"
        )
        for _ in range(40):
            try:
                self.request.sendall(b"x")
            except OSError:
                return
            time.sleep(0.1)


class _LoopbackSession(requests.Session):
    """Sends every request to a local test server regardless of the URL."""

    def __init__(self, target: str) -> None:
        super().__init__()
        self.target = target

    def get(self, url, **kwargs):
        return super().get(self.target, **kwargs)


class IcsProxyDeadlineTests(unittest.TestCase):
    def setUp(self) -> None:
        socketserver.ThreadingTCPServer.allow_reuse_address = True
        self.server = socketserver.ThreadingTCPServer(("127.0.0.1", 0), _TrickleHandler)
        self.server.daemon_threads = True
        self.thread = threading.Thread(target=self.server.serve_forever, daemon=True)
        self.thread.start()
        host, port = self.server.server_address
        self.session = _LoopbackSession(f"http://{host}:{port}/feed.ics")

    def tearDown(self) -> None:
        self.session.close()
        self.server.shutdown()
        self.server.server_close()

    def test_trickling_upstream_is_cut_off_at_deadline(self) -> None:
        proxy = IcsProxy(ProxyConfig(timeout_seconds=0.5), session=self.session, resolver=public_resolver)
        started = time.monotonic()
        with self.assertRaisesRegex(UpstreamFetchError, "timed out"):
            proxy.fetch("https://calendar.example.com/feed.ics")
        self.assertLess(time.monotonic() - started, 2.0)


if __name__ == "__main__":
    unittest.main()
