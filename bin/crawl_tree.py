#!/usr/bin/env python3
"""
ktools Concurrent Tree Crawler

Lists every directory below a root with a fixed pool of worker tasks.

Design:
- Workers take one CrawlJob at a time, list it, and publish one CrawlResult
- A single control loop owns the pending counter and the collected entries;
  it is the only reader of the results queue and the only producer of jobs
- The job queue grows as subdirectories are discovered; the crawl ends when
  the pending counter returns to zero
- Fail-fast: the first error wins; remaining results are drained and
  dropped, and the error is raised instead of a partial tree
- Cancellation: the client's shutdown event stops everything immediately
"""

from __future__ import annotations

import asyncio
import sys
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from kdrive_client import Entry, KDriveClient
from kdrive_request import Cancelled


DEFAULT_WORKERS = 5
RESULT_QUEUE_SIZE = 100

ProgressCallback = Callable[[str, int], None]


# =============================================================================
# JOBS AND RESULTS
# =============================================================================

@dataclass(frozen=True)
class CrawlJob:
    """List the direct children of one directory."""
    dir_id: int
    dir_name: str


@dataclass
class CrawlResult:
    """Outcome of one CrawlJob: its children, or the error that stopped it."""
    dir_name: str
    entries: list[Entry] = field(default_factory=list)
    error: Optional[BaseException] = None


def _debug(client: KDriveClient, msg: str) -> None:
    if client.verbose:
        print(f"[Crawl] {time.strftime('%H:%M:%S')} {msg}", file=sys.stderr)


# =============================================================================
# CRAWL
# =============================================================================

async def crawl(
    client: KDriveClient,
    root_id: int,
    root_name: str = "root",
    on_progress: Optional[ProgressCallback] = None,
    *,
    num_workers: int = DEFAULT_WORKERS,
    shutdown: Optional[asyncio.Event] = None,
) -> list[Entry]:
    """
    Return every entry below `root_id` (the root itself excluded).

    Args:
        client: Client used for every listing call
        root_id: Directory to start from
        root_name: Display name of the root, passed to on_progress
        on_progress: Called as on_progress(dir_name, total_entries) after each
                     directory listing is merged
        num_workers: Number of concurrent listing tasks
        shutdown: Cancellation signal; defaults to the client's

    Returns:
        Flattened entries in completion order (callers sort if needed)

    Raises:
        Cancelled: shutdown was set during the crawl
        KDriveError: first error reported by any listing
    """
    if shutdown is None:
        shutdown = client.shutdown
    if shutdown.is_set():
        raise Cancelled("crawl cancelled")

    # Unbounded: the control loop never blocks on enqueue.
    jobs: asyncio.Queue[Optional[CrawlJob]] = asyncio.Queue()
    results: asyncio.Queue[CrawlResult] = asyncio.Queue(maxsize=RESULT_QUEUE_SIZE)

    async def worker() -> None:
        while True:
            job = await jobs.get()
            if job is None or shutdown.is_set():
                return
            try:
                entries = await client.list_files(job.dir_id)
                result = CrawlResult(job.dir_name, entries)
            except Exception as e:
                result = CrawlResult(job.dir_name, error=e)
            if shutdown.is_set():
                return
            await results.put(result)

    workers = [
        asyncio.create_task(worker(), name=f"crawl-worker-{i}")
        for i in range(max(1, num_workers))
    ]
    stop_wait = asyncio.create_task(shutdown.wait())

    collected: list[Entry] = []
    first_error: Optional[BaseException] = None
    pending = 1
    jobs.put_nowait(CrawlJob(root_id, root_name))
    _debug(client, f"started root={root_id} workers={len(workers)}")

    try:
        while pending > 0:
            next_result = asyncio.create_task(results.get())
            done, _ = await asyncio.wait(
                {next_result, stop_wait},
                return_when=asyncio.FIRST_COMPLETED,
            )
            if stop_wait in done:
                next_result.cancel()
                raise Cancelled("crawl cancelled")

            result = next_result.result()
            pending -= 1

            if result.error is not None:
                if first_error is None:
                    first_error = result.error
                    _debug(client, f"listing {result.dir_name!r} failed, draining: {result.error}")
                continue
            if first_error is not None:
                continue

            collected.extend(result.entries)
            if on_progress is not None:
                on_progress(result.dir_name, len(collected))

            if shutdown.is_set():
                raise Cancelled("crawl cancelled")
            for entry in result.entries:
                if entry.is_dir:
                    pending += 1
                    jobs.put_nowait(CrawlJob(entry.id, entry.name))

        for _ in workers:
            jobs.put_nowait(None)
        await asyncio.gather(*workers)
    finally:
        stop_wait.cancel()
        for task in workers:
            if not task.done():
                task.cancel()
        await asyncio.gather(stop_wait, *workers, return_exceptions=True)

    if shutdown.is_set():
        raise Cancelled("crawl cancelled")
    if first_error is not None:
        raise first_error

    _debug(client, f"finished root={root_id} entries={len(collected)}")
    return collected
