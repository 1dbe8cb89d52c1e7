"""
Model Lifecycle – Remote Fetcher

Retrieves the asset bytes from a single HTTP(S) GET endpoint.

FAILURE SEMANTICS:
- Non-2xx status → FetchFailedError (status attached)
- Connect or read timeout → FetchFailedError("timeout ...")
- Transport error → FetchFailedError
- Body shorter than Content-Length → FetchFailedError (skipped for
  content-encoded bodies, which aiohttp decodes transparently)
- No retries, no backoff (retry policy belongs to the caller)

CRITICAL CONSTRAINTS:
- The body is fully buffered before it is returned
- Partial downloads are never handed to the Local Store
- Timeouts are the only cancellation mechanism
"""

import asyncio
from typing import Optional

import aiohttp
from loguru import logger

from .errors import FetchFailedError


DOWNLOAD_CHUNK_SIZE = 64 * 1024

# Ask for the raw body so Content-Length matches the drained byte count
REQUEST_HEADERS = {"Accept-Encoding": "identity"}


class RemoteFetcher:
    """
    HTTP client for the remote asset source.

    One aiohttp session is created per fetch; fetches are rare (at most
    one in flight per manager) so connection reuse buys nothing.
    """

    def __init__(self, max_bytes: Optional[int] = None, chunk_size: int = DOWNLOAD_CHUNK_SIZE):
        """
        Args:
            max_bytes: Reject bodies larger than this (None = unlimited)
            chunk_size: Read size while draining the body
        """
        self.max_bytes = max_bytes
        self.chunk_size = chunk_size
        self.fetch_count = 0

    async def fetch(self, url: str, connect_timeout: float, read_timeout: float) -> bytes:
        """
        Perform a single GET and return the complete body.

        Args:
            url: Asset URL
            connect_timeout: Seconds allowed to establish the connection
            read_timeout: Seconds allowed between body reads

        Returns:
            The fully drained response body

        Raises:
            FetchFailedError: On any non-2xx status, timeout or transport error
        """
        self.fetch_count += 1
        timeout = aiohttp.ClientTimeout(
            total=None,
            sock_connect=connect_timeout,
            sock_read=read_timeout,
        )

        logger.info(f"Fetching asset from {url}")

        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.get(url, headers=REQUEST_HEADERS) as response:
                    if not 200 <= response.status < 300:
                        raise FetchFailedError(
                            f"server returned HTTP {response.status}",
                            status=response.status,
                        )

                    data = await self._drain(response)

        except FetchFailedError as e:
            logger.warning(f"Asset fetch from {url} failed: {e.reason}")
            raise

        except asyncio.TimeoutError as e:
            logger.warning(f"Asset fetch from {url} timed out")
            raise FetchFailedError("timeout while fetching asset") from e

        except aiohttp.ClientError as e:
            logger.warning(f"Asset fetch from {url} failed (network error): {e}")
            raise FetchFailedError(f"network error: {e}") from e

        logger.info(f"Fetched {len(data)} bytes from {url}")
        return data

    async def _drain(self, response: aiohttp.ClientResponse) -> bytes:
        expected = response.content_length
        encoding = response.headers.get("Content-Encoding", "identity").strip().lower()
        if encoding != "identity":
            # aiohttp decodes the body, Content-Length counts the encoded bytes
            logger.debug(f"Server sent {encoding}-encoded body despite identity request")
            expected = None

        if self.max_bytes is not None and expected is not None and expected > self.max_bytes:
            raise FetchFailedError(
                f"asset too large ({expected} bytes > limit {self.max_bytes})",
                status=response.status,
            )

        buffer = bytearray()
        async for chunk in response.content.iter_chunked(self.chunk_size):
            buffer.extend(chunk)
            if self.max_bytes is not None and len(buffer) > self.max_bytes:
                raise FetchFailedError(
                    f"asset exceeds limit of {self.max_bytes} bytes",
                    status=response.status,
                )

        if expected is not None and len(buffer) != expected:
            raise FetchFailedError(
                f"incomplete body ({len(buffer)} of {expected} bytes)",
                status=response.status,
            )

        if not buffer:
            raise FetchFailedError("server returned an empty body", status=response.status)

        return bytes(buffer)
