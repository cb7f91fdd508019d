import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Optional

import aiohttp
from aiohttp import hdrs, web
from aiohttp_socks import ProxyError
from multidict import CIMultiDict
from yarl import URL

from tailrelay.errors import RelayError, RelayErrorKind
from tailrelay.headers import copy_headers

logger = logging.getLogger("tailrelay.proxy")

FORWARDED_FOR = "X-Forwarded-For"
STREAM_CHUNK_SIZE = 64 * 1024

_SEND_ERRORS = (aiohttp.ClientError, asyncio.TimeoutError, OSError, ProxyError)


@dataclass
class ForwardedRequest:
    """The outbound leg of one inbound request"""

    method: str
    url: URL
    headers: CIMultiDict
    body: Optional[Any] = None


def client_address(request: web.BaseRequest) -> Optional[str]:
    """Host portion of the caller's address, if the transport knows it"""
    return request.remote or None


class HttpRelay:
    """Reverse proxy for a single upstream origin.

    ``session`` must already be bound to the tailnet; this class only
    rewrites requests and copies responses.
    """

    def __init__(self, session: aiohttp.ClientSession, target_origin: str):
        self.session = session
        self.target_origin = target_origin.rstrip("/")

    def target_url(self, request: web.BaseRequest) -> URL:
        # Only the path and query of the inbound request survive, so an
        # absolute-form request line cannot redirect the scheme or host.
        # raw_path_qs keeps the original percent-encoding.
        return URL(f"{self.target_origin}{request.rel_url.raw_path_qs}", encoded=True)

    def build_request(self, request: web.BaseRequest) -> ForwardedRequest:
        url = self.target_url(request)
        if not url.is_absolute() or not url.host:
            raise ValueError(f"invalid target url {url}")

        headers = CIMultiDict()
        copy_headers(request.headers, headers)
        # The outbound Host belongs to the target
        headers.popall(hdrs.HOST, None)

        remote = client_address(request)
        if remote:
            prior = ", ".join(headers.popall(FORWARDED_FOR, []))
            headers[FORWARDED_FOR] = f"{prior}, {remote}" if prior else remote

        body = request.content if request.body_exists else None
        return ForwardedRequest(request.method, url, headers, body)

    def build_response(
        self, request: web.BaseRequest, upstream: aiohttp.ClientResponse
    ) -> web.StreamResponse:
        response = web.StreamResponse(status=upstream.status, reason=upstream.reason)
        copy_headers(upstream.headers, response.headers)
        remote = client_address(request)
        if remote:
            response.headers[FORWARDED_FOR] = remote
        return response

    async def handle(self, request: web.BaseRequest) -> web.StreamResponse:
        """Forward one request and stream the upstream response back"""
        try:
            outbound = self.build_request(request)
        except ValueError as e:
            error = RelayError(RelayErrorKind.BUILD_REQUEST, "error creating request", cause=e)
            logger.error(f"[http] {error}")
            return web.Response(status=500, text="error creating request")

        logger.info(f"[http] {outbound.method} {outbound.url}")

        try:
            upstream = await self.session.request(
                outbound.method,
                outbound.url,
                headers=outbound.headers,
                data=outbound.body,
                allow_redirects=False,
            )
        except _SEND_ERRORS as e:
            error = RelayError(RelayErrorKind.SEND_REQUEST, "error sending request", cause=e)
            logger.error(f"[http] {outbound.method} {outbound.url}: {error}")
            return web.Response(status=500, text="error sending request")

        async with upstream:
            response = self.build_response(request, upstream)
            await self._stream_body(request, upstream, response)
        return response

    async def _stream_body(
        self,
        request: web.BaseRequest,
        upstream: aiohttp.ClientResponse,
        response: web.StreamResponse,
    ) -> None:
        # Once the status line is out a failure can only end the response early
        try:
            await response.prepare(request)
            async for chunk in upstream.content.iter_chunked(STREAM_CHUNK_SIZE):
                await response.write(chunk)
            await response.write_eof()
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            logger.debug(f"[http] response stream ended early: {e!r}")
