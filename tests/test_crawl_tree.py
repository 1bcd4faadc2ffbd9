from __future__ import annotations

import asyncio
import itertools
import time

import pytest

from crawl_tree import crawl
from fake_kdrive import DRIVE_ID, TOKEN, FakeDrive, serve
from kdrive_client import KDriveClient
from kdrive_request import APIError, Cancelled


def make_client(base_url: str) -> KDriveClient:
    return KDriveClient(TOKEN, DRIVE_ID, base_url, rate_limit=1000.0, rate_capacity=1000, backoff_sec=0.01)


def run_crawl(drive: FakeDrive, root_id: int = 1, root_name: str = "root", **kwargs):
    async def scenario():
        async with serve(drive.app()) as url, make_client(url) as client:
            return await crawl(client, root_id, root_name, **kwargs)
    return asyncio.run(scenario())


def build_tree(depth: int, fanout: int, files_per_dir: int = 2, page_sizes=(100,)) -> FakeDrive:
    """Uniform tree: every directory holds `fanout` subdirectories and some files."""
    drive = FakeDrive(page_sizes=page_sizes)
    ids = itertools.count(100)
    level = [1]
    for d in range(depth):
        nxt = []
        for parent in level:
            for f in range(files_per_dir):
                drive.add_file(next(ids), parent, f"file-{d}-{f}", size=10 * (f + 1))
            for s in range(fanout):
                nxt.append(drive.add_dir(next(ids), parent, f"dir-{d}-{s}"))
        level = nxt
    return drive


# =============================================================================
# Completeness
# =============================================================================

@pytest.mark.parametrize("num_workers", [1, 5, 10])
@pytest.mark.parametrize("depth,fanout", [(1, 3), (3, 3), (5, 2), (2, 9)])
def test_crawl_matches_sequential_listing(num_workers, depth, fanout):
    drive = build_tree(depth, fanout, page_sizes=(3,))
    entries = run_crawl(drive, num_workers=num_workers)

    ids = [e.id for e in entries]
    assert len(ids) == len(set(ids))
    assert set(ids) == drive.descendants(1)
    # every directory listed exactly once
    listed = sorted(set(drive.listing_log))
    dirs = sorted([1] + [e.id for e in entries if e.is_dir])
    assert listed == dirs


def test_crawl_is_idempotent():
    drive = build_tree(3, 3)
    first = run_crawl(drive, num_workers=5)
    second = run_crawl(drive, num_workers=5)
    assert set(first) == set(second)


@pytest.mark.parametrize("num_workers", [1, 5, 10])
def test_concrete_scenario(num_workers):
    drive = FakeDrive()
    drive.add_dir(10, 1, "A")
    drive.add_file(11, 1, "B", size=500)
    drive.add_file(12, 10, "C", size=1500)

    entries = run_crawl(drive, num_workers=num_workers)

    got = {(e.id, e.type, e.size) for e in entries}
    assert got == {(10, "dir", 0), (11, "file", 500), (12, "file", 1500)}
    assert sum(e.size for e in entries) == 2000
    c = next(e for e in entries if e.id == 12)
    assert c.parent_id == 10
    assert c.depth == 2


def test_crawl_of_subtree_excludes_root_and_siblings():
    drive = FakeDrive()
    drive.add_dir(10, 1, "A")
    drive.add_dir(20, 1, "B")
    drive.add_file(11, 10, "a.txt")
    drive.add_file(21, 20, "b.txt")

    entries = run_crawl(drive, root_id=10, root_name="A")
    assert [e.id for e in entries] == [11]


def test_empty_root():
    assert run_crawl(FakeDrive()) == []


def test_throttled_directory_recovers_inside_transport():
    drive = build_tree(2, 3)
    drive.throttled[drive.children[1][-1]] = 2
    entries = run_crawl(drive)
    assert {e.id for e in entries} == drive.descendants(1)


# =============================================================================
# Progress
# =============================================================================

def test_progress_reports_each_directory_with_running_total():
    drive = build_tree(2, 2, files_per_dir=1)
    calls = []

    entries = run_crawl(drive, root_name="/", on_progress=lambda name, total: calls.append((name, total)))

    assert calls[0] == ("/", 3)
    # root, two first-level dirs, four empty leaf dirs
    assert len(calls) == 1 + 2 + 4
    totals = [t for _, t in calls]
    assert totals == sorted(totals)
    assert totals[-1] == len(entries)
    assert {name for name, _ in calls[1:]} == {"dir-0-0", "dir-0-1", "dir-1-0", "dir-1-1"}


# =============================================================================
# Fail-fast
# =============================================================================

@pytest.mark.parametrize("num_workers", [1, 5, 10])
def test_one_failing_subdirectory_fails_the_whole_crawl(num_workers):
    drive = FakeDrive()
    subdirs = [drive.add_dir(100 + i, 1, f"sub{i}") for i in range(1, 10)]
    for d in subdirs:
        drive.add_file(d * 10, d, "data.bin", size=100)
    drive.failures[subdirs[6]] = 500

    with pytest.raises(APIError) as exc_info:
        run_crawl(drive, num_workers=num_workers)
    assert exc_info.value.status == 500


def test_first_error_wins_and_results_are_drained():
    drive = FakeDrive()
    bad = drive.add_dir(10, 1, "bad")
    slow_bad = drive.add_dir(20, 1, "slow-bad")
    drive.failures[bad] = 403
    drive.failures[slow_bad] = 500
    drive.delays[slow_bad] = 0.2

    with pytest.raises(APIError) as exc_info:
        run_crawl(drive, num_workers=2)
    assert exc_info.value.status == 403
    assert sorted(drive.listing_log) == [1, 10, 20]


def test_no_new_jobs_after_first_error():
    drive = FakeDrive()
    drive.failures[drive.add_dir(10, 1, "bad")] = 500
    good = drive.add_dir(20, 1, "good")
    drive.delays[good] = 0.2
    drive.add_dir(21, good, "never-listed")

    with pytest.raises(APIError):
        run_crawl(drive, num_workers=2)
    assert 21 not in drive.listing_log


def test_workers_do_not_leak():
    drive = build_tree(2, 3)
    drive.failures[drive.children[1][-1]] = 500

    async def scenario():
        async with serve(drive.app()) as url, make_client(url) as client:
            with pytest.raises(APIError):
                await crawl(client, 1, "root", num_workers=5)
            return [t for t in asyncio.all_tasks() if t.get_name().startswith("crawl-worker")]

    assert asyncio.run(scenario()) == []


# =============================================================================
# Cancellation
# =============================================================================

def test_cancel_from_progress_dispatches_no_further_jobs():
    drive = FakeDrive()
    for i in range(5):
        drive.add_dir(10 + i, 1, f"d{i}")

    async def scenario():
        async with serve(drive.app()) as url, make_client(url) as client:
            with pytest.raises(Cancelled):
                await crawl(client, 1, "root", lambda name, total: client.shutdown.set())

    asyncio.run(scenario())
    assert drive.listing_log == [1]


def test_cancel_mid_crawl_returns_promptly():
    drive = FakeDrive()
    for i in range(5):
        d = drive.add_dir(10 + i, 1, f"d{i}")
        drive.delays[d] = 2.0

    async def scenario():
        async with serve(drive.app()) as url, make_client(url) as client:
            asyncio.get_running_loop().call_later(0.3, client.shutdown.set)
            start = time.monotonic()
            with pytest.raises(Cancelled):
                await crawl(client, 1, "root")
            return time.monotonic() - start

    assert asyncio.run(scenario()) < 1.5


def test_cancellation_takes_precedence_over_recorded_error():
    drive = FakeDrive()
    drive.failures[drive.add_dir(10, 1, "bad")] = 500
    slow = drive.add_dir(20, 1, "slow")
    drive.delays[slow] = 2.0

    async def scenario():
        async with serve(drive.app()) as url, make_client(url) as client:
            asyncio.get_running_loop().call_later(0.3, client.shutdown.set)
            with pytest.raises(Cancelled):
                await crawl(client, 1, "root", num_workers=2)

    asyncio.run(scenario())


def test_explicit_shutdown_event_already_set():
    drive = build_tree(1, 2)

    async def scenario():
        async with serve(drive.app()) as url, make_client(url) as client:
            stop = asyncio.Event()
            stop.set()
            with pytest.raises(Cancelled):
                await crawl(client, 1, "root", shutdown=stop)

    asyncio.run(scenario())
    assert drive.listing_log == []
