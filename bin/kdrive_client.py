#!/usr/bin/env python3
"""
ktools kDrive Client

Typed wrappers over RequestTransport for the kDrive endpoints ktools uses:
- get_file() / list_files() (cursor pagination)
- find_file_by_path() / resolve_start() for CLI arguments
- list_categories() / add_category() / remove_category() for tagging
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from typing import Any, Optional
from urllib.parse import quote

from kdrive_request import (
    DEFAULT_BACKOFF_SEC,
    DEFAULT_RATE_CAPACITY,
    DEFAULT_RATE_LIMIT,
    DEFAULT_TIMEOUT_SEC,
    APIError,
    DecodeError,
    NotFound,
    RequestTransport,
)


DEFAULT_BASE_URL = "https://api.infomaniak.com"
ROOT_ID = 1


def _as_id(arg: str) -> Optional[int]:
    """Numeric id for an ASCII digit string, else None."""
    if arg.isascii() and arg.isdigit():
        return int(arg)
    return None


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass(frozen=True)
class Entry:
    """One file or directory of the remote tree."""
    id: int
    parent_id: int
    type: str                   # "dir" | "file"
    name: str
    size: int = 0               # bytes; 0 for directories
    last_modified_at: int = 0   # unix seconds
    created_at: int = 0         # unix seconds
    depth: int = 0

    @property
    def is_dir(self) -> bool:
        return self.type == "dir"

    @classmethod
    def from_json(cls, data: Any) -> "Entry":
        if not isinstance(data, dict):
            raise DecodeError(f"file entry is not an object: {data!r}")
        try:
            return cls(
                id=int(data["id"]),
                parent_id=int(data.get("parent_id") or 0),
                type=str(data["type"]),
                name=str(data["name"]),
                size=int(data.get("size") or 0),
                last_modified_at=int(data.get("last_modified_at") or 0),
                created_at=int(data.get("created_at") or 0),
                depth=int(data.get("depth") or 0),
            )
        except KeyError as e:
            raise DecodeError(f"file entry missing field {e}") from e
        except (TypeError, ValueError) as e:
            raise DecodeError(f"invalid file entry: {e}") from e


@dataclass(frozen=True)
class Category:
    """A drive category (tag)."""
    id: int
    name: str
    color: str = ""
    is_predefined: bool = False


@dataclass(frozen=True)
class CategoryResult:
    """Per-file outcome of a category add/remove call."""
    id: int
    result: bool


# =============================================================================
# DECODING
# =============================================================================

def decode_envelope(payload: bytes) -> dict:
    """
    Parse a `{"result": ..., "data": ...}` response envelope.

    Raises:
        DecodeError: body is not a JSON object
        APIError: result is not "success"
    """
    try:
        doc = json.loads(payload)
    except ValueError as e:
        raise DecodeError(f"JSON parse error: {e}") from e
    if not isinstance(doc, dict):
        raise DecodeError("response is not a JSON object")
    if doc.get("result") != "success":
        raise APIError(200, payload)
    return doc


def _decode_list(doc: dict, what: str) -> list:
    data = doc.get("data")
    if not isinstance(data, list):
        raise DecodeError(f"{what}: 'data' is not a list")
    return data


# =============================================================================
# CLIENT
# =============================================================================

class KDriveClient:
    """
    kDrive API client bound to one drive.

    Owns its RequestTransport (and therefore its rate limiter and shutdown
    event); every component issuing requests receives the client explicitly.
    """

    def __init__(
        self,
        api_token: str,
        drive_id: int,
        base_url: str = DEFAULT_BASE_URL,
        *,
        rate_limit: float = DEFAULT_RATE_LIMIT,
        rate_capacity: int = DEFAULT_RATE_CAPACITY,
        timeout_sec: float = DEFAULT_TIMEOUT_SEC,
        backoff_sec: float = DEFAULT_BACKOFF_SEC,
        shutdown: Optional[asyncio.Event] = None,
        verbose: bool = False,
    ):
        self.drive_id = drive_id
        self.transport = RequestTransport(
            base_url,
            api_token,
            rate_limit=rate_limit,
            rate_capacity=rate_capacity,
            timeout_sec=timeout_sec,
            backoff_sec=backoff_sec,
            shutdown=shutdown,
            verbose=verbose,
        )

    async def __aenter__(self) -> "KDriveClient":
        await self.transport.open()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.transport.close()

    @property
    def shutdown(self) -> asyncio.Event:
        return self.transport.shutdown

    @property
    def verbose(self) -> bool:
        return self.transport.verbose

    # --- Files ---------------------------------------------------------------

    async def get_file(self, file_id: int) -> Entry:
        path = f"/3/drive/{self.drive_id}/files/{file_id}"
        doc = decode_envelope(await self.transport.execute("GET", path))
        return Entry.from_json(doc.get("data"))

    async def list_files(self, dir_id: int) -> list[Entry]:
        """
        List the direct children of a directory, following the cursor.

        Pages are concatenated in server order. Any failing page aborts the
        whole listing; nothing partial is returned.
        """
        path = f"/3/drive/{self.drive_id}/files/{dir_id}/files"
        entries: list[Entry] = []
        cursor: Optional[str] = None

        while True:
            req_path = path if cursor is None else f"{path}?cursor={quote(cursor, safe='')}"
            doc = decode_envelope(await self.transport.execute("GET", req_path))
            entries.extend(Entry.from_json(item) for item in _decode_list(doc, "file listing"))

            if not doc.get("has_more"):
                break
            cursor = doc.get("cursor")
            if not cursor:
                raise DecodeError(f"listing of {dir_id}: has_more without a cursor")

        return entries

    async def find_file_by_path(self, file_path: str) -> Entry:
        """Walk from the root matching each path segment case-insensitively."""
        parts = [p for p in file_path.strip("/").split("/") if p]
        current_id = ROOT_ID

        for part in parts:
            wanted = part.lower()
            children = await self.list_files(current_id)
            match = next((c for c in children if c.name.lower() == wanted), None)
            if match is None:
                raise NotFound(f"path not found: {part}")
            current_id = match.id

        return await self.get_file(current_id)

    async def resolve_start(self, arg: Optional[str]) -> tuple[int, str]:
        """
        Resolve a CLI `path_or_id` argument to (id, display name).

        No argument means the drive root. A numeric id whose lookup fails
        with an API error falls back to the id itself as the name.
        """
        if not arg:
            return ROOT_ID, "/"
        file_id = _as_id(arg)
        if file_id is not None:
            try:
                entry = await self.get_file(file_id)
            except APIError:
                return file_id, arg
            return file_id, entry.name
        entry = await self.find_file_by_path(arg)
        return entry.id, entry.name

    async def resolve_file_id(self, arg: str) -> int:
        file_id = _as_id(arg)
        if file_id is not None:
            return file_id
        return (await self.find_file_by_path(arg)).id

    # --- Categories ----------------------------------------------------------

    async def list_categories(self) -> list[Category]:
        path = f"/2/drive/{self.drive_id}/categories"
        doc = decode_envelope(await self.transport.execute("GET", path))
        try:
            return [
                Category(
                    id=int(c["id"]),
                    name=str(c["name"]),
                    color=str(c.get("color") or ""),
                    is_predefined=bool(c.get("is_predefined", False)),
                )
                for c in _decode_list(doc, "categories")
            ]
        except (KeyError, TypeError, ValueError) as e:
            raise DecodeError(f"invalid category: {e}") from e

    async def resolve_category(self, name_or_id: str) -> tuple[int, str]:
        """Resolve a category name or numeric id to (id, name)."""
        category_id = _as_id(name_or_id)
        if category_id is not None:
            try:
                categories = await self.list_categories()
            except APIError:
                return category_id, name_or_id
            for c in categories:
                if c.id == category_id:
                    return c.id, c.name
            return category_id, name_or_id

        wanted = name_or_id.lower()
        for c in await self.list_categories():
            if c.name.lower() == wanted:
                return c.id, c.name
        raise NotFound(f"category '{name_or_id}' not found")

    async def add_category(self, category_id: int, file_ids: list[int]) -> list[CategoryResult]:
        return await self._modify_category("POST", category_id, file_ids)

    async def remove_category(self, category_id: int, file_ids: list[int]) -> list[CategoryResult]:
        return await self._modify_category("DELETE", category_id, file_ids)

    async def _modify_category(
        self,
        method: str,
        category_id: int,
        file_ids: list[int],
    ) -> list[CategoryResult]:
        path = f"/2/drive/{self.drive_id}/files/categories/{category_id}"
        payload = await self.transport.execute(method, path, {"file_ids": list(file_ids)})
        doc = decode_envelope(payload)
        try:
            return [
                CategoryResult(id=int(r["id"]), result=bool(r["result"]))
                for r in _decode_list(doc, "category results")
            ]
        except (KeyError, TypeError, ValueError) as e:
            raise DecodeError(f"invalid category result: {e}") from e
