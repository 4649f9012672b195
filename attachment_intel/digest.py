"""Fetch asset bytes over HTTP and fingerprint them, with bounded concurrency."""

from __future__ import annotations

import asyncio
import concurrent.futures
import hashlib
import logging
import time
from typing import Iterable

import httpx

from attachment_intel.common import DigestError
from attachment_intel.models import Asset
from attachment_intel.scan_status import ScanProgress
from attachment_intel.url_extractor import is_full_url

LOGGER = logging.getLogger("attachment_intel.digest")

CONNECT_TIMEOUT = 10.0
READ_TIMEOUT = 30.0
CHUNK_SIZE = 8192
PROGRESS_EVERY = 50


class LinkResolver:
    """Turns site-relative addresses into absolute ones using the external site URL."""

    def __init__(self, site_url: str | None):
        self.site_url = site_url.rstrip("/") if site_url else None

    def resolve(self, address: str) -> str:
        if is_full_url(address) or not self.site_url:
            return address
        if not address.startswith("/"):
            address = "/" + address
        return self.site_url + address


class AssetFetcher:
    """Blocking byte fetcher; meant to run on a worker thread."""

    def __init__(
        self,
        resolver: LinkResolver,
        transport: httpx.BaseTransport | None = None,
        chunk_size: int = CHUNK_SIZE,
    ):
        self.resolver = resolver
        self.chunk_size = chunk_size
        self.client = httpx.Client(
            timeout=httpx.Timeout(READ_TIMEOUT, connect=CONNECT_TIMEOUT),
            follow_redirects=True,
            transport=transport,
        )

    def close(self) -> None:
        self.client.close()

    def __enter__(self) -> "AssetFetcher":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def md5_of(self, address: str, deadline: float | None = None) -> str:
        """Hex MD5 of the bytes at ``address``; gives up once ``deadline`` (monotonic) has passed."""
        url = self.resolver.resolve(address)
        hasher = hashlib.md5()
        try:
            with self.client.stream("GET", url) as resp:
                if resp.status_code != 200:
                    raise DigestError(f"HTTP {resp.status_code} for {url}")
                for chunk in resp.iter_bytes(self.chunk_size):
                    if deadline is not None and time.monotonic() > deadline:
                        raise DigestError(f"deadline passed while reading {url}")
                    hasher.update(chunk)
        except httpx.HTTPError as exc:
            raise DigestError(f"fetch failed for {url}: {exc}") from exc
        return hasher.hexdigest()


async def digest_assets(
    assets: Iterable[Asset],
    fetcher: AssetFetcher,
    concurrency: int,
    timeout: float,
    progress: ScanProgress,
) -> dict[str, str]:
    """Digest every asset with at most ``concurrency`` fetches in flight.

    Returns ``{asset name: hex digest}`` for the assets that succeeded. Assets
    without a permalink, fetch failures and timeouts are left out; each of them
    still counts towards ``progress``.

    Each asset's ``timeout`` starts when a worker thread picks it up, so time
    spent queued behind a fetch that already timed out is not charged to it.
    """
    loop = asyncio.get_running_loop()
    semaphore = asyncio.Semaphore(concurrency)
    results: dict[str, str] = {}

    async def one(asset: Asset, executor: concurrent.futures.Executor) -> None:
        async with semaphore:
            try:
                if not asset.permalink:
                    LOGGER.debug("digest_skipped asset=%s reason=no_permalink", asset.name)
                    return
                running = asyncio.Event()

                def job(address: str) -> str:
                    loop.call_soon_threadsafe(running.set)
                    return fetcher.md5_of(address, time.monotonic() + timeout)

                future = loop.run_in_executor(executor, job, asset.permalink)
                await running.wait()
                results[asset.name] = await asyncio.wait_for(future, timeout)
            except asyncio.TimeoutError:
                LOGGER.warning("digest_timeout asset=%s timeout=%s", asset.name, timeout)
            except Exception as exc:  # pylint: disable=broad-except
                LOGGER.warning("digest_failed asset=%s error=%s", asset.name, exc)
            finally:
                done = progress.increment()
                if done % PROGRESS_EVERY == 0:
                    LOGGER.info("digest_progress scanned=%s total=%s", done, progress.total)

    executor = concurrent.futures.ThreadPoolExecutor(max_workers=concurrency, thread_name_prefix="digest")
    try:
        await asyncio.gather(*(one(a, executor) for a in assets))
    finally:
        # Timed-out fetches may still be draining; do not block the loop on them.
        executor.shutdown(wait=False)
    return results
