#!/usr/bin/env python3
"""
ktools Drive Statistics

Sequential post-processing of a crawl result (a flat list of Entry):
- directory_stats(): files and bytes held directly by each directory
- select_directories(): sort / threshold / top-N selection for `scan`
- age_distribution() and stale_files(): last-modified analysis for `stale`

All passes go through a polars DataFrame built by entries_frame().
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, Optional

import polars as pl

from kdrive_client import Entry


SECONDS_PER_DAY = 86400

ENTRY_SCHEMA = {
    "id": pl.Int64,
    "parent_id": pl.Int64,
    "type": pl.Utf8,
    "name": pl.Utf8,
    "size": pl.Int64,
    "last_modified_at": pl.Int64,
    "created_at": pl.Int64,
    "depth": pl.Int64,
}


@dataclass(frozen=True)
class AgeBucket:
    label: str
    min_days: int
    max_days: Optional[int]     # None = unbounded


AGE_BUCKETS = (
    AgeBucket("< 6 months", 0, 182),
    AgeBucket("6m - 1y", 182, 365),
    AgeBucket("1 - 2y", 365, 730),
    AgeBucket("2 - 3y", 730, 1095),
    AgeBucket("3 - 5y", 1095, 1825),
    AgeBucket("> 5y", 1825, None),
)


# =============================================================================
# FRAMES
# =============================================================================

def entries_frame(entries: Iterable[Entry]) -> pl.DataFrame:
    """One row per entry, columns as in ENTRY_SCHEMA."""
    rows = list(entries)
    return pl.DataFrame(
        {col: [getattr(e, col) for e in rows] for col in ENTRY_SCHEMA},
        schema=ENTRY_SCHEMA,
    )


def _files(frame: pl.DataFrame) -> pl.DataFrame:
    return frame.filter(pl.col("type") != "dir")


def tree_totals(entries: Iterable[Entry]) -> tuple[int, int, int]:
    """Return (file_count, dir_count, total_file_bytes)."""
    frame = entries_frame(entries)
    files = _files(frame)
    n_dirs = frame.height - files.height
    return files.height, n_dirs, int(files["size"].sum() or 0)


# =============================================================================
# DIRECTORY STATS (scan)
# =============================================================================

def directory_stats(entries: Iterable[Entry], root_id: int, root_name: str) -> pl.DataFrame:
    """
    Count files and bytes directly inside each directory.

    The crawl root is not part of the crawl output, so it is added here.
    Only directories holding at least one file are returned.

    Returns:
        DataFrame with columns id, name, depth, file_count, size
    """
    frame = entries_frame(entries)

    dirs = frame.filter((pl.col("type") == "dir") & (pl.col("id") != root_id)).select("id", "name", "depth")
    root = pl.DataFrame(
        {"id": [root_id], "name": [root_name], "depth": [0]},
        schema={"id": pl.Int64, "name": pl.Utf8, "depth": pl.Int64},
    )
    dirs = pl.concat([root, dirs])

    per_parent = _files(frame).group_by("parent_id").agg(
        pl.len().cast(pl.Int64).alias("file_count"),
        pl.col("size").sum().alias("size"),
    )

    return dirs.join(per_parent, left_on="id", right_on="parent_id", how="inner")


def select_directories(
    stats: pl.DataFrame,
    sort: str = "size",
    threshold: int = 100,
    top: int = 10,
    show_all: bool = False,
) -> tuple[pl.DataFrame, bool]:
    """
    Rank directory stats for display.

    Args:
        stats: Output of directory_stats()
        sort: "size" or "files" (descending)
        threshold: Minimum file_count to be listed
        top: Maximum rows; 0 = unlimited
        show_all: Skip threshold and top filtering

    Returns:
        (selected rows, fell_back) where fell_back is True when nothing met
        the threshold and the top rows are shown instead
    """
    key = "file_count" if sort == "files" else "size"
    ranked = stats.sort([key, "id"], descending=[True, False])

    if show_all:
        return ranked, False

    passing = ranked.filter(pl.col("file_count") >= threshold)
    if passing.height == 0 and ranked.height > 0:
        return (ranked.head(top) if top > 0 else ranked), True
    return (passing.head(top) if top > 0 else passing), False


# =============================================================================
# AGE ANALYSIS (stale)
# =============================================================================

_AGE_RE = re.compile(r"^(\d+)([ymadj]?)$")


def parse_age(age: str) -> int:
    """
    Parse "2y", "6m", "90d" (or a bare number of years) into days.

    'a' and 'j' are accepted as aliases of 'y' and 'd'.
    """
    match = _AGE_RE.match(age.strip())
    if match is None:
        raise ValueError("format: <number>[y|m|d] (ex: 2y, 6m, 90d)")
    value = int(match.group(1))
    unit = match.group(2) or "y"
    if unit in ("y", "a"):
        return value * 365
    if unit == "m":
        return value * 30
    return value


def _with_age(files: pl.DataFrame, now: float) -> pl.DataFrame:
    return files.with_columns(
        ((pl.lit(float(now)) - pl.col("last_modified_at")) / SECONDS_PER_DAY)
        .cast(pl.Int64)
        .alias("age_days")
    )


def age_distribution(entries: Iterable[Entry], now: float) -> pl.DataFrame:
    """
    Count files and bytes per AGE_BUCKETS bucket.

    Returns:
        DataFrame with columns label, count, size (one row per bucket, in order)
    """
    files = _with_age(_files(entries_frame(entries)), now)

    labels, counts, sizes = [], [], []
    for bucket in AGE_BUCKETS:
        cond = pl.col("age_days") >= bucket.min_days
        if bucket.max_days is not None:
            cond = cond & (pl.col("age_days") < bucket.max_days)
        hit = files.filter(cond)
        labels.append(bucket.label)
        counts.append(hit.height)
        sizes.append(int(hit["size"].sum() or 0))

    return pl.DataFrame(
        {"label": labels, "count": counts, "size": sizes},
        schema={"label": pl.Utf8, "count": pl.Int64, "size": pl.Int64},
    )


def stale_files(
    entries: Iterable[Entry],
    threshold_days: int,
    now: float,
    min_size: int = 0,
) -> pl.DataFrame:
    """
    Files last modified more than `threshold_days` ago, largest first.

    Returns:
        DataFrame with columns id, name, size, last_modified_at, age_days
    """
    cutoff = now - threshold_days * SECONDS_PER_DAY
    files = _with_age(_files(entries_frame(entries)), now)
    stale = files.filter(pl.col("last_modified_at") < cutoff)
    if min_size > 0:
        stale = stale.filter(pl.col("size") >= min_size)
    return (
        stale.select("id", "name", "size", "last_modified_at", "age_days")
        .sort(["size", "id"], descending=[True, False])
    )


# =============================================================================
# FORMATTING
# =============================================================================

def format_size(n_bytes: int) -> str:
    """Human-readable size with binary units."""
    kb = 1024
    mb = kb * 1024
    gb = mb * 1024
    if n_bytes >= gb:
        return f"{n_bytes / gb:.1f} GB"
    if n_bytes >= mb:
        return f"{n_bytes / mb:.1f} MB"
    if n_bytes >= kb:
        return f"{n_bytes / kb:.1f} KB"
    return f"{n_bytes} B"


def format_age_days(days: int) -> str:
    years, rest = divmod(days, 365)
    months = rest // 30
    if years > 0:
        return f"{years}y {months}m" if months > 0 else f"{years}y"
    if months > 0:
        return f"{months}m"
    return f"{days}d"


def truncate_name(name: str, max_len: int) -> str:
    if len(name) <= max_len:
        return name
    return name[:max_len - 3] + "..."
