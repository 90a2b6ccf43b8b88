"""
File operation utilities

This module handles downloads with retry logic, payload decompression and
temporary file cleanup.
"""
import gzip
import logging
import tempfile
import zlib
from pathlib import Path
from uuid import uuid4
import asyncio

import aiofiles
import httpx

from iptv_cache.errors import TransportError


logger = logging.getLogger(__name__)

DEFAULT_HEADERS = {
    "User-Agent": "Mozilla/5.0",
    "Accept-Encoding": "gzip, deflate",
}


def sanitize_url_for_logging(url: str) -> str:
    """Remove credentials from URL for safe logging."""
    if "://" not in url:
        return url
    try:
        protocol, rest = url.split("://", 1)
        if "@" in rest:
            rest = rest.split("@", 1)[1]
            return f"{protocol}://***:***@{rest}"
        return url
    except (ValueError, IndexError):
        return url


async def _with_retries(url: str, operation, *, max_retries: int, backoff_factor: float):
    """
    Run an httpx operation with exponential backoff.

    Retries on transient network errors and 5xx responses; 4xx responses and
    other httpx errors (decoding, redirects, invalid URLs) fail immediately.
    Every failure surfaces as TransportError.
    """
    last_error: Exception | None = None
    safe_url = sanitize_url_for_logging(url)

    for attempt in range(max_retries):
        try:
            return await operation()

        except (httpx.TimeoutException, httpx.TransportError) as e:
            last_error = e
            if attempt < max_retries - 1:
                wait_time = backoff_factor ** attempt
                logger.warning(
                    f"Request attempt {attempt + 1}/{max_retries} for {safe_url} failed "
                    f"(transient error): {type(e).__name__}. Retrying in {wait_time:.1f}s..."
                )
                await asyncio.sleep(wait_time)
            else:
                logger.error(f"Request to {safe_url} failed after {max_retries} attempts (transient error)")

        except httpx.HTTPStatusError as e:
            if 400 <= e.response.status_code < 500:
                logger.error(f"HTTP {e.response.status_code} (client error) for {safe_url}")
                raise TransportError(f"HTTP {e.response.status_code} fetching {safe_url}") from e

            last_error = e
            if attempt < max_retries - 1:
                wait_time = backoff_factor ** attempt
                logger.warning(
                    f"Request attempt {attempt + 1}/{max_retries} for {safe_url} failed "
                    f"(HTTP {e.response.status_code} server error). Retrying in {wait_time:.1f}s..."
                )
                await asyncio.sleep(wait_time)
            else:
                logger.error(
                    f"Request to {safe_url} failed after {max_retries} attempts "
                    f"(HTTP {e.response.status_code})"
                )

        except (httpx.HTTPError, httpx.InvalidURL) as e:
            logger.error(f"Request to {safe_url} failed (non-retryable {type(e).__name__}): {e}")
            raise TransportError(f"{type(e).__name__} fetching {safe_url}: {e}") from e

    raise TransportError(f"Failed to fetch {safe_url} after {max_retries} attempts: {last_error}") from last_error


async def download_file(
    url: str,
    filename: str,
    timeout: float = 100.0,
    max_retries: int = 3,
    backoff_factor: float = 2.0
) -> Path:
    """
    Stream a URL into a temporary file

    Args:
        url: URL to download from
        filename: Suffix for the temporary file name
        timeout: HTTP timeout in seconds
        max_retries: Maximum number of attempts
        backoff_factor: Exponential backoff multiplier (wait = backoff_factor ^ attempt)

    Returns:
        Path to downloaded temporary file

    Raises:
        TransportError: If download fails after all retries
    """
    temp_file = Path(tempfile.gettempdir()) / f"iptv_cache_{uuid4().hex}_{filename}"

    async def _download() -> Path:
        async with httpx.AsyncClient(timeout=timeout, headers=DEFAULT_HEADERS, follow_redirects=True) as client:
            async with client.stream("GET", url.strip()) as response:
                response.raise_for_status()
                size = 0
                async with aiofiles.open(temp_file, "wb") as f:
                    async for chunk in response.aiter_bytes():
                        size += len(chunk)
                        await f.write(chunk)

        logger.info(f"Downloaded {size / (1024 * 1024):.2f} MB to {temp_file}")
        return temp_file

    logger.info(f"Downloading file from {sanitize_url_for_logging(url)}...")
    try:
        return await _with_retries(url, _download, max_retries=max_retries, backoff_factor=backoff_factor)
    except TransportError:
        cleanup_temp_file(temp_file)
        raise


async def fetch_text(
    url: str,
    timeout: float = 100.0,
    max_retries: int = 3,
    backoff_factor: float = 2.0
) -> str:
    """Fetch a URL and return the decoded response body"""

    async def _fetch() -> str:
        async with httpx.AsyncClient(timeout=timeout, headers=DEFAULT_HEADERS, follow_redirects=True) as client:
            response = await client.get(url.strip())
            response.raise_for_status()
            return response.text

    return await _with_retries(url, _fetch, max_retries=max_retries, backoff_factor=backoff_factor)


def read_payload(file_path: Path) -> bytes:
    """
    Read a downloaded guide file, undoing any compression

    Tries gzip first, then raw deflate, then zlib-wrapped deflate, and finally
    returns the bytes untouched as plain text.
    """
    raw = file_path.read_bytes()

    try:
        return gzip.decompress(raw)
    except (OSError, EOFError, zlib.error):
        pass

    for wbits in (-zlib.MAX_WBITS, zlib.MAX_WBITS):
        try:
            return zlib.decompress(raw, wbits)
        except zlib.error:
            continue

    return raw


def cleanup_temp_file(file_path: Path) -> bool:
    """
    Safely delete a temporary file

    Args:
        file_path: Path to file to delete

    Returns:
        True if deleted successfully, False otherwise
    """
    if not file_path or not file_path.exists():
        return False

    try:
        file_path.unlink()
        logger.debug(f"Cleaned up temporary file: {file_path}")
        return True
    except (OSError, PermissionError) as e:
        logger.warning(f"Failed to delete temporary file {file_path}: {e}")
        return False
