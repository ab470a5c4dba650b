from __future__ import annotations

import ipaddress
import logging
import socket
import threading
import time
from dataclasses import dataclass
from typing import Callable
from urllib.parse import urljoin, urlsplit

import requests

from daysync.errors import ResourceLimitError, UpstreamFetchError, ValidationError
from daysync.models import ProxyConfig

logger = logging.getLogger(__name__)

CALENDAR_MEDIA_TYPE = "text/calendar; charset=utf-8"
CHUNK_SIZE = 64 * 1024

BLOCKED_NETWORKS = tuple(
    ipaddress.ip_network(cidr)
    for cidr in (
        "10.0.0.0/8",
        "127.0.0.0/8",
        "169.254.0.0/16",
        "172.16.0.0/12",
        "192.168.0.0/16",
        "::1/128",
        "fc00::/7",
        "fe80::/10",
    )
)
BLOCKED_HOSTNAMES = {"localhost"}

Resolver = Callable[[str], list[str]]


@dataclass
class FeedResponse:
    text: str
    media_type: str = CALENDAR_MEDIA_TYPE
    byte_count: int = 0
    final_url: str = ""


def resolve_host(hostname: str) -> list[str]:
    try:
        infos = socket.getaddrinfo(hostname, 443, proto=socket.IPPROTO_TCP)
    except (socket.gaierror, UnicodeError) as exc:
        raise ValidationError(f"Could not resolve host: {hostname}") from exc
    addresses: list[str] = []
    for info in infos:
        address = str(info[4][0]).split("%", 1)[0]
        if address not in addresses:
            addresses.append(address)
    return addresses


def is_blocked_address(address: str) -> bool:
    try:
        ip = ipaddress.ip_address(address.split("%", 1)[0])
    except ValueError:
        return True
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        ip = ip.ipv4_mapped
    if ip.is_unspecified:
        return True
    return any(ip.version == network.version and ip in network for network in BLOCKED_NETWORKS)


def validate_feed_url(raw_url: str | None, resolver: Resolver = resolve_host) -> str:
    """Return the normalized URL, or raise ``ValidationError`` if it must not be fetched."""
    text = str(raw_url or "").strip()
    if not text:
        raise ValidationError("Missing url")
    try:
        parts = urlsplit(text)
        hostname = parts.hostname
        parts.port  # raises ValueError for malformed ports
    except ValueError as exc:
        raise ValidationError("Invalid url") from exc
    if parts.scheme.lower() != "https":
        raise ValidationError("Only https URLs are allowed")
    if not hostname:
        raise ValidationError("Invalid url")
    host = hostname.lower().rstrip(".")
    if host in BLOCKED_HOSTNAMES or host.endswith(".localhost"):
        raise ValidationError("Host not allowed")
    try:
        ipaddress.ip_address(host)
        addresses = [host]
    except ValueError:
        addresses = resolver(host)
    if not addresses:
        raise ValidationError(f"Could not resolve host: {host}")
    if any(is_blocked_address(address) for address in addresses):
        raise ValidationError("Private IPs are not allowed")
    return text


def _abort_response(response: requests.Response) -> None:
    # Closing alone does not wake a thread blocked in recv(); shut the socket down first.
    raw = getattr(response, "raw", None)
    connection = getattr(raw, "connection", None) or getattr(raw, "_connection", None)
    sock = getattr(connection, "sock", None)
    if sock is not None:
        try:
            sock.shutdown(socket.SHUT_RDWR)
        except OSError as exc:
            logger.debug("Upstream socket already closed: %s", exc)
    response.close()


class _FetchWatchdog:
    """Aborts the response currently being read once the fetch budget is spent."""

    def __init__(self, seconds: float) -> None:
        self.fired = False
        self._lock = threading.Lock()
        self._response: requests.Response | None = None
        self._timer = threading.Timer(seconds, self._fire)
        self._timer.daemon = True

    def start(self) -> None:
        self._timer.start()

    def cancel(self) -> None:
        self._timer.cancel()

    def watch(self, response: requests.Response) -> None:
        with self._lock:
            self._response = response
            fired = self.fired
        if fired:
            _abort_response(response)

    def _fire(self) -> None:
        with self._lock:
            self.fired = True
            response = self._response
        if response is not None:
            _abort_response(response)


class IcsProxy:
    """Server-side fetcher for third-party calendar feeds.

    Enforces an overall deadline, a streamed byte cap, and re-validates every
    redirect hop against the private-address rules. A watchdog timer tears
    down the in-flight response when the deadline passes.
    """

    def __init__(
        self,
        config: ProxyConfig | None = None,
        *,
        session: requests.Session | None = None,
        resolver: Resolver = resolve_host,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config or ProxyConfig()
        self.session = session or requests.Session()
        self.resolver = resolver
        self.clock = clock

    def _remaining(self, deadline: float) -> float:
        remaining = deadline - self.clock()
        if remaining <= 0:
            raise UpstreamFetchError("Upstream fetch timed out")
        return remaining

    def _open(self, url: str, deadline: float, watchdog: _FetchWatchdog) -> requests.Response:
        current = url
        for _ in range(self.config.max_redirects + 1):
            remaining = self._remaining(deadline)
            try:
                response = self.session.get(
                    current,
                    headers={"User-Agent": self.config.user_agent},
                    stream=True,
                    allow_redirects=False,
                    timeout=(remaining, remaining),
                )
            except requests.Timeout as exc:
                raise UpstreamFetchError("Upstream fetch timed out") from exc
            except requests.RequestException as exc:
                raise UpstreamFetchError(f"Fetch error: {type(exc).__name__}") from exc
            watchdog.watch(response)
            if not response.is_redirect:
                return response
            location = response.headers.get("Location", "")
            response.close()
            current = validate_feed_url(urljoin(current, location), self.resolver)
        raise UpstreamFetchError("Too many redirects")

    def _read(self, url: str, deadline: float, watchdog: _FetchWatchdog) -> FeedResponse:
        response = self._open(url, deadline, watchdog)
        try:
            if not 200 <= response.status_code < 300:
                raise UpstreamFetchError(f"Fetch failed with status {response.status_code}")
            declared = response.headers.get("Content-Length")
            if declared and declared.isdigit() and int(declared) > self.config.max_bytes:
                raise ResourceLimitError("Response too large")

            total = 0
            chunks: list[bytes] = []
            try:
                for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                    self._remaining(deadline)
                    if not chunk:
                        continue
                    total += len(chunk)
                    if total > self.config.max_bytes:
                        chunks.clear()
                        raise ResourceLimitError("Response too large")
                    chunks.append(chunk)
            except requests.Timeout as exc:
                raise UpstreamFetchError("Upstream fetch timed out") from exc
            except requests.RequestException as exc:
                raise UpstreamFetchError(f"Fetch error: {type(exc).__name__}") from exc
            # an aborted body without Content-Length ends like a normal EOF
            if watchdog.fired:
                raise UpstreamFetchError("Upstream fetch timed out")

            text = b"".join(chunks).decode("utf-8-sig", errors="replace")
            return FeedResponse(text=text, byte_count=total, final_url=str(response.url or url))
        finally:
            response.close()

    def fetch(self, raw_url: str | None) -> FeedResponse:
        url = validate_feed_url(raw_url, self.resolver)
        deadline = self.clock() + self.config.timeout_seconds
        watchdog = _FetchWatchdog(self.config.timeout_seconds)
        watchdog.start()
        try:
            return self._read(url, deadline, watchdog)
        except (ResourceLimitError, ValidationError):
            raise
        except Exception as exc:
            if watchdog.fired:
                raise UpstreamFetchError("Upstream fetch timed out") from exc
            raise
        finally:
            watchdog.cancel()

    def fetch_text(self, url: str) -> str:
        return self.fetch(url).text
