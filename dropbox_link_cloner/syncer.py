"""
License:
dropbox_link_cloner
Copyright (C) 2025  Frédéric Devernay

Licensed under the Apache License, Version 2.0 (the "License");
you may not use this file except in compliance with the License.
You may obtain a copy of the License at

http://www.apache.org/licenses/LICENSE-2.0

Unless required by applicable law or agreed to in writing, software
distributed under the License is distributed on an "AS IS" BASIS,
WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
See the License for the specific language governing permissions and
limitations under the License.
"""

import os
import platform
import tempfile
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Iterable, Iterator, List, Optional

import dropbox
import requests
from dropbox.files import FileMetadata, FolderMetadata, SharedLink
from tqdm import tqdm

from .errors import LocalIOError, TransportError
from .sync_log import SyncLog

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

DOWNLOAD_CHUNK_SIZE = 1024 * 1024  # 1MB chunks for download
# Overall ceiling for a single download; idle socket reads are bounded by the client timeout
DOWNLOAD_TIME_LIMIT = 20 * 60.0

API_ERRORS = (
    dropbox.exceptions.DropboxException,
    requests.exceptions.RequestException,
)


def as_utc(dt: datetime) -> datetime:
    """Dropbox returns naive datetimes in UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_ns(dt: datetime) -> int:
    """Nanoseconds since the epoch, the resolution of st_mtime_ns."""
    return (as_utc(dt) - EPOCH) // timedelta(microseconds=1) * 1000


def from_ns(ns: int) -> datetime:
    """Aware UTC datetime for a nanosecond timestamp, truncated to the microsecond."""
    return EPOCH + timedelta(microseconds=ns // 1000)


def _set_creation_time_windows(path: Path, dt: datetime) -> None:
    import ctypes
    from ctypes import wintypes

    # FILETIME counts 100ns intervals since 1601-01-01
    intervals = (dt - datetime(1601, 1, 1, tzinfo=timezone.utc)) // timedelta(microseconds=1) * 10
    filetime = wintypes.FILETIME(intervals & 0xFFFFFFFF, intervals >> 32)

    kernel32 = ctypes.WinDLL("kernel32", use_last_error=True)
    FILE_WRITE_ATTRIBUTES = 0x100
    OPEN_EXISTING = 3
    FILE_FLAG_BACKUP_SEMANTICS = 0x02000000
    handle = kernel32.CreateFileW(
        str(path), FILE_WRITE_ATTRIBUTES, 0, None, OPEN_EXISTING, FILE_FLAG_BACKUP_SEMANTICS, None
    )
    if handle == wintypes.HANDLE(-1).value:
        raise ctypes.WinError(ctypes.get_last_error())
    try:
        if not kernel32.SetFileTime(handle, ctypes.byref(filetime), None, None):
            raise ctypes.WinError(ctypes.get_last_error())
    finally:
        kernel32.CloseHandle(handle)


def set_local_timestamp(path: Path, dt: datetime) -> None:
    """
    Set the access and last-write times of a file, and its creation time on
    Windows, to the given datetime.
    """
    dt = as_utc(dt)
    ns = to_ns(dt)
    os.utime(path, ns=(ns, ns))
    if platform.system() == "Windows":
        _set_creation_time_windows(path, dt)


@dataclass
class SyncReport:
    name: str
    downloaded: int = 0
    skipped: int = 0
    empty: int = 0
    failed: int = 0


class SharedLinkSyncer:
    """Mirror the top level of Dropbox shared-link folders into local folders."""

    def __init__(
        self,
        dbx: dropbox.Dropbox,
        documents_root: Path,
        log: SyncLog,
        show_progress: bool = True,
    ):
        self.dbx = dbx
        self.documents_root = Path(documents_root)
        self.log = log
        self.show_progress = show_progress

    def sync_all(self, shared_links: Iterable[str]) -> List[SyncReport]:
        reports = []
        for shared_link_url in shared_links:
            try:
                reports.append(self.sync_link(shared_link_url))
            except TransportError as e:
                self.log.error(f"Failed to sync shared link {shared_link_url}")
                self.log.error(e.describe())
            except LocalIOError as e:
                self.log.error(f"Failed to sync shared link {shared_link_url}: {e}")
        return reports

    def _list_entries(self, shared_link_url: str) -> List[object]:
        shared_link = SharedLink(url=shared_link_url)
        try:
            result = self.dbx.files_list_folder(path="", shared_link=shared_link)
            entries = list(result.entries)
            while result.has_more:
                result = self.dbx.files_list_folder_continue(result.cursor)
                entries.extend(result.entries)
        except API_ERRORS as e:
            raise TransportError.from_exception(e, request_uri=shared_link_url) from e
        return entries

    def sync_link(self, shared_link_url: str) -> SyncReport:
        """Download every file of a shared-link folder that changed since the last run."""
        try:
            metadata = self.dbx.sharing_get_shared_link_metadata(shared_link_url)
        except API_ERRORS as e:
            raise TransportError.from_exception(e, request_uri=shared_link_url) from e
        self.log.info(f"Shared link name: {metadata.name}")

        local_dir = self.documents_root / metadata.name
        try:
            local_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise LocalIOError(local_dir, e) from e
        self.log.info(f"Shared link local folder: {local_dir}")

        report = SyncReport(name=metadata.name)
        entries = self._list_entries(shared_link_url)
        with tqdm(
            total=len(entries), desc=metadata.name, unit="file", disable=not self.show_progress
        ) as pbar:
            for entry in entries:
                try:
                    self._sync_entry(shared_link_url, entry, local_dir, report)
                except TransportError as e:
                    report.failed += 1
                    self.log.error(f"Failed during download of {entry.name}")
                    self.log.error(e.describe())
                except LocalIOError as e:
                    report.failed += 1
                    self.log.error(f"Failed during download of {entry.name}: {e}")
                pbar.update(1)

        self.log.info(
            f"Download complete! {report.downloaded} downloaded, {report.skipped} unchanged, "
            f"{report.empty} empty, {report.failed} failed"
        )
        return report

    def _sync_entry(
        self, shared_link_url: str, entry: object, local_dir: Path, report: SyncReport
    ) -> None:
        self.log.detail(f"Processing: {entry.name}")
        if isinstance(entry, FolderMetadata):
            self.log.detail(f"  Skipping folder: {entry.name}")
            report.skipped += 1
            return
        if not isinstance(entry, FileMetadata):
            self.log.detail(f"  Skipping entry: {entry.name}")
            report.skipped += 1
            return

        local_path = local_dir / entry.name
        remote_timestamp = as_utc(entry.server_modified)
        if local_path.exists():
            try:
                local_mtime_ns = local_path.stat().st_mtime_ns
            except OSError as e:
                raise LocalIOError(local_path, e) from e
            self.log.detail(
                f"  Checking {remote_timestamp.isoformat()} with {from_ns(local_mtime_ns).isoformat()}"
            )
            # Exact match to the nanosecond: any clock or timezone skew forces a download
            if local_mtime_ns == to_ns(remote_timestamp):
                self.log.detail(f"  Skipping unchanged file: {entry.name}")
                report.skipped += 1
                return

        self.log.info(f"  Downloading: {entry.name}")
        if self._download_file(shared_link_url, entry, local_path):
            report.downloaded += 1
        else:
            report.empty += 1

    def _iter_content(self, response: requests.Response, entry: FileMetadata) -> Iterator[bytes]:
        started = time.monotonic()
        with tqdm(
            total=entry.size,
            desc=entry.name,
            unit="B",
            unit_scale=True,
            leave=False,
            disable=not self.show_progress,
        ) as pbar:
            for chunk in response.iter_content(chunk_size=DOWNLOAD_CHUNK_SIZE):
                if time.monotonic() - started > DOWNLOAD_TIME_LIMIT:
                    raise TransportError(
                        f"Download took longer than {DOWNLOAD_TIME_LIMIT:.0f} seconds",
                        request_uri=response.url,
                    )
                pbar.update(len(chunk))
                yield chunk

    def _download_file(self, shared_link_url: str, entry: FileMetadata, local_path: Path) -> bool:
        """
        Download an entry next to its destination and move it in place.

        Returns False when the server sent no bytes, in which case the local
        file is left untouched.
        """
        path = f"/{entry.name}"
        self.log.detail(f"    SharedLinkUrl: {shared_link_url}")
        self.log.detail(f"    File Name: {entry.name}")
        try:
            _, response = self.dbx.sharing_get_shared_link_file(shared_link_url, path=path)
        except API_ERRORS as e:
            raise TransportError.from_exception(e, request_uri=shared_link_url) from e

        tmp_path: Optional[Path] = None
        try:
            with response:
                fd, tmp_name = tempfile.mkstemp(
                    prefix=f".{entry.name}.", suffix=".part", dir=local_path.parent
                )
                tmp_path = Path(tmp_name)
                size = 0
                with os.fdopen(fd, "wb") as f:
                    for chunk in self._iter_content(response, entry):
                        f.write(chunk)
                        size += len(chunk)

            if size == 0:
                self.log.warning(f"No bytes downloaded for {entry.name}")
                return False

            os.replace(tmp_path, local_path)
            tmp_path = None
            set_local_timestamp(local_path, entry.server_modified)
            return True
        except requests.exceptions.RequestException as e:
            raise TransportError.from_exception(e, request_uri=shared_link_url) from e
        except OSError as e:
            raise LocalIOError(local_path, e) from e
        finally:
            if tmp_path is not None and tmp_path.exists():
                tmp_path.unlink()
