#!/usr/bin/env python3
"""
ktools: kDrive reporting and tagging CLI

Commands:
  ls     [path_or_id]                     List direct children
  scan   [path_or_id] [-n] [-t] [-a] [-s] Directories holding the most files / bytes
  stale  [path_or_id] [-a] [-n] [-m]      Age distribution and oldest files
  tag    list | add | rm                  Manage categories on files

Configuration is read from a JSON file (--config, ~/.config/ktools/config.json,
~/.ktools/config.json or ./config.json) and KTOOLS_* environment variables.

Usage:
  python ktools.py scan "/Common documents" --sort files
  python ktools.py stale 1234 --age 3y --min-size 1048576
  python ktools.py tag add Archive "/Common documents/2019" -r
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import os
import signal
import sys
import time
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Optional, Sequence

from tqdm import tqdm

from crawl_tree import DEFAULT_WORKERS, crawl
from drive_stats import (
    age_distribution,
    directory_stats,
    format_age_days,
    format_size,
    parse_age,
    select_directories,
    stale_files,
    tree_totals,
    truncate_name,
)
from kdrive_client import DEFAULT_BASE_URL, Entry, KDriveClient
from kdrive_request import (
    DEFAULT_RATE_CAPACITY,
    DEFAULT_RATE_LIMIT,
    DEFAULT_TIMEOUT_SEC,
    Cancelled,
    ConfigError,
    KDriveError,
)


TAG_BATCH_SIZE = 50
EXIT_CANCELLED = 130


# =============================================================================
# CONFIGURATION
# =============================================================================

@dataclass(frozen=True)
class Config:
    """Main application configuration."""
    api_token: str = ""
    drive_id: int = 0
    base_url: str = DEFAULT_BASE_URL

    rate_limit: float = DEFAULT_RATE_LIMIT
    rate_capacity: int = DEFAULT_RATE_CAPACITY
    timeout_sec: float = DEFAULT_TIMEOUT_SEC
    workers: int = DEFAULT_WORKERS

    verbose: bool = False

    def validate(self) -> None:
        if not self.api_token:
            raise ConfigError("api_token required (config or KTOOLS_API_TOKEN)")
        if self.drive_id == 0:
            raise ConfigError("drive_id required (config or KTOOLS_DRIVE_ID)")

    def make_client(self) -> KDriveClient:
        return KDriveClient(
            self.api_token,
            self.drive_id,
            self.base_url,
            rate_limit=self.rate_limit,
            rate_capacity=self.rate_capacity,
            timeout_sec=self.timeout_sec,
            verbose=self.verbose,
        )


def config_search_paths() -> list[Path]:
    home = Path.home()
    return [
        home / ".config" / "ktools" / "config.json",
        home / ".ktools" / "config.json",
        Path("config.json"),
    ]


def load_config(
    config_path: Optional[str] = None,
    env: Optional[dict] = None,
) -> Config:
    """
    Build a Config from defaults, the first JSON file found, then environment.

    Args:
        config_path: Explicit JSON file; must exist when given
        env: Environment mapping (defaults to os.environ)

    Raises:
        ConfigError: unreadable file or invalid value
    """
    env = os.environ if env is None else env
    data: dict = {}

    if config_path is not None:
        candidates = [Path(config_path)]
        if not candidates[0].exists():
            raise ConfigError(f"config file not found: {config_path}")
    else:
        candidates = config_search_paths()

    for path in candidates:
        if not path.exists():
            continue
        try:
            with path.open("r") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            raise ConfigError(f"config read error ({path}): {e}") from e
        if not isinstance(data, dict):
            raise ConfigError(f"config read error ({path}): expected a JSON object")
        break

    if env.get("KTOOLS_API_TOKEN"):
        data["api_token"] = env["KTOOLS_API_TOKEN"]
    if env.get("KTOOLS_DRIVE_ID"):
        data["drive_id"] = env["KTOOLS_DRIVE_ID"]
    if env.get("KTOOLS_BASE_URL"):
        data["base_url"] = env["KTOOLS_BASE_URL"]

    try:
        return Config(
            api_token=str(data.get("api_token", "")),
            drive_id=int(data.get("drive_id", 0)),
            base_url=str(data.get("base_url", DEFAULT_BASE_URL)),
            rate_limit=float(data.get("rate_limit", DEFAULT_RATE_LIMIT)),
            rate_capacity=int(data.get("rate_capacity", DEFAULT_RATE_CAPACITY)),
            timeout_sec=float(data.get("timeout", DEFAULT_TIMEOUT_SEC)),
            workers=int(data.get("workers", DEFAULT_WORKERS)),
        )
    except (TypeError, ValueError) as e:
        raise ConfigError(f"config parse error: {e}") from e


# =============================================================================
# ARGUMENT PARSING
# =============================================================================

def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="ktools",
        description="CLI tool to report on and tag files on Infomaniak kDrive",
    )
    p.add_argument("--config", type=str, help="Path to JSON config file")
    p.add_argument("-v", "--verbose", action="store_true", help="Enable verbose output")
    p.add_argument("--workers", type=int, default=None, help="Concurrent listing workers")

    sub = p.add_subparsers(dest="command", required=True)

    ls = sub.add_parser("ls", help="List files in a directory")
    ls.add_argument("target", nargs="?", default="", help="Directory path or id")
    ls.set_defaults(handler=cmd_ls)

    scan = sub.add_parser("scan", help="Find directories with many files")
    scan.add_argument("target", nargs="?", default="")
    scan.add_argument("-n", "--top", type=int, default=10, help="Show top N directories (0 = unlimited)")
    scan.add_argument("-t", "--threshold", type=int, default=100, help="Minimum file count threshold")
    scan.add_argument("-a", "--all", dest="show_all", action="store_true", help="Show all directories")
    scan.add_argument("-s", "--sort", choices=["size", "files"], default="size")
    scan.set_defaults(handler=cmd_scan)

    stale = sub.add_parser("stale", help="Find old files for retention review")
    stale.add_argument("target", nargs="?", default="")
    stale.add_argument("-a", "--age", default="2y", help="Minimum age (e.g. 2y, 6m, 90d)")
    stale.add_argument("-n", "--top", type=int, default=20, help="Show top N files (0 = unlimited)")
    stale.add_argument("-m", "--min-size", dest="min_size", type=int, default=0, help="Minimum file size in bytes")
    stale.set_defaults(handler=cmd_stale)

    tag = sub.add_parser("tag", help="Manage categories/tags")
    tag_sub = tag.add_subparsers(dest="tag_command", required=True)

    tag_list = tag_sub.add_parser("list", help="List available categories")
    tag_list.set_defaults(handler=cmd_tag_list)

    for name, handler, verb in (("add", cmd_tag_add, "Add"), ("rm", cmd_tag_rm, "Remove")):
        t = tag_sub.add_parser(name, help=f"{verb} a category on a file/directory")
        t.add_argument("category", help="Category name or id")
        t.add_argument("target", help="File path or id")
        t.add_argument("-r", "--recursive", action="store_true", help="Apply to all children too")
        t.set_defaults(handler=handler)

    return p


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    return build_parser().parse_args(argv)


# =============================================================================
# OUTPUT HELPERS
# =============================================================================

def print_table(headers: Sequence[str], rows: Sequence[Sequence[object]]) -> None:
    """Left-aligned columns separated by two spaces."""
    cells = [list(map(str, headers))] + [[str(c) for c in row] for row in rows]
    widths = [max(len(r[i]) for r in cells) for i in range(len(headers))]
    for r in cells:
        print("  ".join(c.ljust(w) for c, w in zip(r, widths)).rstrip())


def _pct(part: int, total: int) -> str:
    return f"{(part / total * 100) if total > 0 else 0.0:.1f}%"


def hex_to_ansi(color: str) -> str:
    """Two-cell ANSI truecolor swatch for a #rrggbb colour, or '' if invalid."""
    color = color.lstrip("#")
    if len(color) != 6:
        return ""
    try:
        r, g, b = (int(color[i:i + 2], 16) for i in (0, 2, 4))
    except ValueError:
        return ""
    return f"\033[48;2;{r};{g};{b}m  \033[0m"


async def crawl_with_progress(
    client: KDriveClient,
    cfg: Config,
    root_id: int,
    root_name: str,
) -> list[Entry]:
    """Crawl with a tqdm spinner on stderr showing the current directory."""
    pbar = tqdm(desc="Scanning", unit="entry", file=sys.stderr, leave=False)

    def progress(dir_name: str, total: int) -> None:
        pbar.set_description_str(f"Scanning: {truncate_name(dir_name, 40)}")
        pbar.update(total - pbar.n)

    try:
        return await crawl(client, root_id, root_name, progress, num_workers=cfg.workers)
    finally:
        pbar.close()


# =============================================================================
# COMMANDS
# =============================================================================

async def cmd_ls(client: KDriveClient, cfg: Config, args: argparse.Namespace) -> None:
    dir_id = await client.resolve_file_id(args.target) if args.target else 1
    entries = sorted(await client.list_files(dir_id), key=lambda e: e.name)
    print_table(
        ["TYPE", "MODIFIED", "ID", "NAME"],
        [
            (e.type, time.strftime("%Y-%m-%d %H:%M", time.localtime(e.last_modified_at)), e.id, e.name)
            for e in entries
        ],
    )


async def cmd_scan(client: KDriveClient, cfg: Config, args: argparse.Namespace) -> None:
    start_id, start_name = await client.resolve_start(args.target)
    entries = await crawl_with_progress(client, cfg, start_id, start_name)

    n_files, n_dirs, total_size = tree_totals(entries)
    stats = directory_stats(entries, start_id, start_name)
    selected, fell_back = select_directories(
        stats,
        sort=args.sort,
        threshold=args.threshold,
        top=args.top,
        show_all=args.show_all,
    )

    if fell_back:
        print(f"No directories with >= {args.threshold} files, showing top {selected.height}:", file=sys.stderr)
    if selected.height == 0:
        print("No directories found")
        return

    print_table(
        ["FILES", "SIZE", "%", "ID", "NAME"],
        [
            (r["file_count"], format_size(r["size"]), _pct(r["size"], total_size), r["id"], r["name"])
            for r in selected.iter_rows(named=True)
        ],
    )
    print(f"\nTotal: {n_files} files, {n_dirs} directories, {format_size(total_size)}")


async def cmd_stale(client: KDriveClient, cfg: Config, args: argparse.Namespace) -> Optional[int]:
    try:
        threshold_days = parse_age(args.age)
    except ValueError as e:
        print(f"[Error] invalid age format: {e}", file=sys.stderr)
        return 1

    start_id, start_name = await client.resolve_start(args.target)
    entries = await crawl_with_progress(client, cfg, start_id, start_name)

    now = time.time()
    n_files, _, total_size = tree_totals(entries)
    buckets = age_distribution(entries, now)
    stale = stale_files(entries, threshold_days, now, min_size=args.min_size)

    print("Age distribution:\n")
    print_table(
        ["RANGE", "FILES", "%", "SIZE", "%"],
        [
            (b["label"], b["count"], _pct(b["count"], n_files), format_size(b["size"]), _pct(b["size"], total_size))
            for b in buckets.iter_rows(named=True)
        ],
    )

    print(f"\nFiles not modified for {args.age}:\n")
    if stale.height == 0:
        print("No files found")
        return 0

    shown = stale.head(args.top) if args.top > 0 else stale
    print_table(
        ["AGE", "SIZE", "MODIFIED", "ID", "NAME"],
        [
            (
                format_age_days(r["age_days"]),
                format_size(r["size"]),
                time.strftime("%Y-%m-%d", time.localtime(r["last_modified_at"])),
                r["id"],
                r["name"],
            )
            for r in shown.iter_rows(named=True)
        ],
    )
    if stale.height > shown.height:
        print(f"\n... and {stale.height - shown.height} more files")

    stale_size = int(stale["size"].sum() or 0)
    print(f"\nTotal: {stale.height} files, {format_size(stale_size)} "
          f"(of {n_files} files, {format_size(total_size)})")
    return 0


async def cmd_tag_list(client: KDriveClient, cfg: Config, args: argparse.Namespace) -> None:
    for c in await client.list_categories():
        print(f"{c.id}\t{hex_to_ansi(c.color)} {c.color}\t{c.name}")


async def collect_targets(
    client: KDriveClient,
    cfg: Config,
    file_id: int,
    recursive: bool,
) -> list[tuple[int, str]]:
    """The target itself, plus every descendant when recursive."""
    root = await client.get_file(file_id)
    targets = [(root.id, root.name)]
    if recursive:
        children = await crawl_with_progress(client, cfg, root.id, root.name)
        targets.extend((e.id, e.name) for e in children)
    return targets


async def _apply_category(client: KDriveClient, cfg: Config, args: argparse.Namespace, remove: bool) -> None:
    category_id, category_name = await client.resolve_category(args.category)
    file_id = await client.resolve_file_id(args.target)
    targets = await collect_targets(client, cfg, file_id, args.recursive)
    names = dict(targets)
    ids = [t[0] for t in targets]

    action = client.remove_category if remove else client.add_category
    verb = "Removing" if remove else "Adding"
    ok_count = skip_count = 0

    with tqdm(total=len(ids), desc=f"{verb} [{category_name}]", unit="file", file=sys.stderr, leave=False) as pbar:
        for i in range(0, len(ids), TAG_BATCH_SIZE):
            results = await action(category_id, ids[i:i + TAG_BATCH_SIZE])
            for r in results:
                pbar.set_postfix_str(truncate_name(names.get(r.id, str(r.id)), 30))
                pbar.update(1)
                if r.result:
                    ok_count += 1
                else:
                    skip_count += 1

    if remove:
        print(f"Done: {ok_count} untagged, {skip_count} skipped (not tagged)", file=sys.stderr)
    else:
        print(f"Done: {ok_count} tagged, {skip_count} skipped (already tagged)", file=sys.stderr)


async def cmd_tag_add(client: KDriveClient, cfg: Config, args: argparse.Namespace) -> None:
    await _apply_category(client, cfg, args, remove=False)


async def cmd_tag_rm(client: KDriveClient, cfg: Config, args: argparse.Namespace) -> None:
    await _apply_category(client, cfg, args, remove=True)


# =============================================================================
# MAIN
# =============================================================================

async def run(cfg: Config, args: argparse.Namespace) -> int:
    """Run one command; returns the process exit code."""
    async with cfg.make_client() as client:
        loop = asyncio.get_running_loop()
        installed = []

        def _on_signal() -> None:
            print("\n[Shutdown] Interrupt received, cancelling...", file=sys.stderr)
            client.shutdown.set()

        for sig in (signal.SIGINT, signal.SIGTERM):
            with contextlib.suppress(NotImplementedError, RuntimeError, ValueError):
                loop.add_signal_handler(sig, _on_signal)
                installed.append(sig)

        try:
            code = await args.handler(client, cfg, args)
        except Cancelled as e:
            print(f"[Shutdown] {e}", file=sys.stderr)
            return EXIT_CANCELLED
        except KDriveError as e:
            print(f"[Error] {e}", file=sys.stderr)
            return 1
        finally:
            for sig in installed:
                loop.remove_signal_handler(sig)

    return code or 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    try:
        cfg = load_config(args.config)
        overrides = {"verbose": args.verbose}
        if args.workers is not None:
            overrides["workers"] = max(1, args.workers)
        cfg = replace(cfg, **overrides)
        cfg.validate()
    except ConfigError as e:
        print(f"[Error] {e}", file=sys.stderr)
        return 1

    try:
        return asyncio.run(run(cfg, args))
    except KeyboardInterrupt:
        return EXIT_CANCELLED


if __name__ == "__main__":
    sys.exit(main())
