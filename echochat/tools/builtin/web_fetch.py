"""
HTTP(S) fetch tool with private-address protection.

The host of every URL, including each redirect hop, is resolved and checked
before any request is made.  Loopback, private, link-local and unspecified
addresses are refused, as are IPv4-mapped IPv6 forms of them.
"""

from __future__ import annotations

import asyncio
import ipaddress
import logging
import socket
from html.parser import HTMLParser
from typing import Awaitable, Callable

import httpx

from echochat.tools.base import Tool, ToolError

logger = logging.getLogger(__name__)

TIMEOUT_SECS = 15
MAX_REDIRECTS = 5
MAX_RESPONSE_BYTES = 100_000
# Markup is stripped after reading, so the body may run past the text cap.
MAX_READ_BYTES = MAX_RESPONSE_BYTES * 4
USER_AGENT = "echochat/0.1 (+web_fetch)"

Resolver = Callable[[str, int], Awaitable[list[str]]]

_BLOCK_TAGS = {
    "p", "br", "div", "li", "tr", "h1", "h2", "h3", "h4", "h5", "h6",
    "section", "article", "header", "footer", "pre", "blockquote", "table",
}


# ---------------------------------------------------------------------------
# Address checks
# ---------------------------------------------------------------------------

async def system_resolver(host: str, port: int) -> list[str]:
    loop = asyncio.get_running_loop()
    infos = await loop.getaddrinfo(host, port, type=socket.SOCK_STREAM)
    return [info[4][0] for info in infos]


def is_disallowed_address(address: str) -> bool:
    ip = ipaddress.ip_address(address.split("%", 1)[0])
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        ip = ip.ipv4_mapped
    return ip.is_loopback or ip.is_private or ip.is_link_local or ip.is_unspecified


# ---------------------------------------------------------------------------
# HTML to text
# ---------------------------------------------------------------------------

class _TextExtractor(HTMLParser):
    def __init__(self) -> None:
        super().__init__(convert_charrefs=True)
        self._parts: list[str] = []
        self._skip = 0

    def handle_starttag(self, tag, attrs):
        if tag in ("script", "style"):
            self._skip += 1
        elif tag in _BLOCK_TAGS:
            self._parts.append("\n")

    def handle_endtag(self, tag):
        if tag in ("script", "style"):
            if self._skip:
                self._skip -= 1
        elif tag in _BLOCK_TAGS:
            self._parts.append("\n")

    def handle_data(self, data):
        if not self._skip:
            self._parts.append(data)

    def text(self) -> str:
        return "".join(self._parts)


def html_to_text(html: str) -> str:
    """Strip tags (dropping script/style bodies), unescape and collapse whitespace."""
    extractor = _TextExtractor()
    extractor.feed(html)
    extractor.close()
    lines = (" ".join(line.split()) for line in extractor.text().splitlines())
    return "\n".join(line for line in lines if line)


def _truncate(text: str, cut: bool = False) -> str:
    raw = text.encode("utf-8")
    if not cut and len(raw) <= MAX_RESPONSE_BYTES:
        return text
    head = raw[:MAX_RESPONSE_BYTES].decode("utf-8", errors="ignore")
    if cut:
        return f"{head}...\n\n[Truncated: response exceeded {MAX_READ_BYTES} bytes]"
    return f"{head}...\n\n[Truncated: response was {len(raw)} bytes]"


async def _read_capped(response: httpx.Response) -> tuple[bytes, bool]:
    """Read at most ``MAX_READ_BYTES`` of the body; the flag means the rest went unread."""
    buf = bytearray()
    async for chunk in response.aiter_bytes():
        buf.extend(chunk)
        if len(buf) > MAX_READ_BYTES:
            return bytes(buf[:MAX_READ_BYTES]), True
    return bytes(buf), False


# ---------------------------------------------------------------------------
# Tool
# ---------------------------------------------------------------------------

class WebFetchTool(Tool):
    """
    Fetch a URL and return its text content.

    Parameters
    ----------
    transport:
        Optional ``httpx`` transport override.
    resolver:
        Coroutine ``(host, port) -> [address, ...]`` used for the address
        check.  Defaults to the event loop's ``getaddrinfo``.
    """

    def __init__(
        self,
        transport: httpx.AsyncBaseTransport | None = None,
        resolver: Resolver | None = None,
        timeout: float = TIMEOUT_SECS,
    ) -> None:
        self._transport = transport
        self._resolver = resolver or system_resolver
        self._timeout = timeout

    @property
    def name(self) -> str:
        return "web_fetch"

    @property
    def description(self) -> str:
        return (
            "Fetch the content of a web page by URL. HTML is converted to "
            "plain text. Only public http and https addresses are allowed."
        )

    @property
    def parameters(self) -> dict:
        return {
            "type": "object",
            "properties": {
                "url": {"type": "string", "description": "The URL to fetch"},
            },
            "required": ["url"],
        }

    async def execute(self, **kwargs) -> str:
        try:
            url = httpx.URL(kwargs["url"])
        except httpx.InvalidURL as e:
            raise ToolError(f"Invalid URL: {e}") from e

        response, raw, cut = await self._fetch(url)

        text = raw.decode(response.encoding or "utf-8", errors="replace")
        content_type = response.headers.get("content-type", "")
        if "html" in content_type or text.lstrip()[:1] == "<":
            text = html_to_text(text)

        body = f"HTTP {response.status_code} {response.reason_phrase}\n\n{_truncate(text, cut)}"
        if not response.is_success:
            raise ToolError(body)
        return body

    async def _check_url(self, url: httpx.URL) -> None:
        if url.scheme not in ("http", "https"):
            raise ToolError(f"Unsupported URL scheme '{url.scheme}': only http and https are allowed")
        host = url.host
        if not host:
            raise ToolError("URL has no host")

        try:
            addresses = [str(ipaddress.ip_address(host))]
        except ValueError:
            port = url.port or (443 if url.scheme == "https" else 80)
            try:
                addresses = await self._resolver(host, port)
            except OSError as e:
                raise ToolError(f"Failed to resolve host '{host}': {e}") from e
            if not addresses:
                raise ToolError(f"Failed to resolve host '{host}'")

        for address in addresses:
            if is_disallowed_address(address):
                logger.warning("web_fetch refused %s (%s)", host, address)
                raise ToolError(
                    f"Blocked: '{host}' resolves to a private or local address ({address})"
                )

    async def _fetch(self, url: httpx.URL) -> tuple[httpx.Response, bytes, bool]:
        """Return the final response, its (possibly capped) body, and whether it was cut."""
        async with httpx.AsyncClient(
            timeout=self._timeout,
            follow_redirects=False,
            transport=self._transport,
            headers={"User-Agent": USER_AGENT},
        ) as client:
            for _ in range(MAX_REDIRECTS + 1):
                await self._check_url(url)
                try:
                    async with client.stream("GET", url) as response:
                        location = response.headers.get("location")
                        if not (response.is_redirect and location):
                            raw, cut = await _read_capped(response)
                            if cut:
                                logger.debug(
                                    "web_fetch stopped reading %s at %d bytes", url, MAX_READ_BYTES
                                )
                            return response, raw, cut
                except httpx.TimeoutException as e:
                    raise ToolError(f"Request timed out after {int(self._timeout)} seconds") from e
                except httpx.HTTPError as e:
                    raise ToolError(f"Request failed: {e}") from e

                url = url.join(location)
                logger.debug("web_fetch following redirect to %s", url)

        raise ToolError(f"Too many redirects (max {MAX_REDIRECTS})")
