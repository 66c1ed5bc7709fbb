"""Resolution, download and local caching of Chromium snapshot builds."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import platform as _platform
import shutil
import stat
import sys
import tempfile
import zipfile
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from pathlib import Path

import httpx

from .config import DEFAULT_DOWNLOAD_HOST
from .errors import ConfigurationError, DownloadError
from .models import RevisionInfo

LOGGER = logging.getLogger(__name__)

DOWNLOAD_URLS: dict[str, str] = {
    "linux": "{host}/chromium-browser-snapshots/Linux_x64/{revision}/{archive}.zip",
    "mac": "{host}/chromium-browser-snapshots/Mac/{revision}/{archive}.zip",
    "win32": "{host}/chromium-browser-snapshots/Win/{revision}/{archive}.zip",
    "win64": "{host}/chromium-browser-snapshots/Win_x64/{revision}/{archive}.zip",
}

SUPPORTED_PLATFORMS = tuple(DOWNLOAD_URLS)

# Windows archives were renamed from chrome-win32 to chrome-win after this revision.
WINDOWS_ARCHIVE_RENAME_REVISION = 591479

ProgressCallback = Callable[[int, int], None]


@dataclass
class _FolderLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


# Revision folder path -> lock shared by the downloads and removals waiting on it.
_DOWNLOAD_LOCKS: dict[str, _FolderLock] = {}


def current_platform() -> str:
    """Map the running interpreter onto a snapshot platform name."""

    if sys.platform == "darwin":
        return "mac"
    if sys.platform.startswith("linux"):
        return "linux"
    if sys.platform == "win32":
        machine = _platform.machine().lower()
        return "win64" if machine in {"amd64", "x86_64"} else "win32"
    return sys.platform


def ensure_supported(platform: str) -> str:
    if platform not in DOWNLOAD_URLS:
        raise ConfigurationError(f"Unsupported platform: {platform}")
    return platform


def archive_name(platform: str, revision: str) -> str:
    ensure_supported(platform)
    if platform == "linux":
        return "chrome-linux"
    if platform == "mac":
        return "chrome-mac"
    try:
        renamed = int(revision) > WINDOWS_ARCHIVE_RENAME_REVISION
    except ValueError:
        renamed = False
    return "chrome-win" if renamed else "chrome-win32"


def relative_executable_path(platform: str, revision: str) -> str:
    """Return the executable path inside the extracted archive."""

    archive = archive_name(platform, revision)
    if platform == "linux":
        return os.path.join(archive, "chrome")
    if platform == "mac":
        return os.path.join(archive, "Chromium.app", "Contents", "MacOS", "Chromium")
    return os.path.join(archive, "chrome.exe")


def download_url(platform: str, revision: str, *, host: str = DEFAULT_DOWNLOAD_HOST) -> str:
    ensure_supported(platform)
    return DOWNLOAD_URLS[platform].format(
        host=host.rstrip("/"),
        revision=revision,
        archive=archive_name(platform, revision),
    )


def revision_info(
    platform: str,
    revision: str,
    cache_root: str | os.PathLike[str],
    *,
    host: str = DEFAULT_DOWNLOAD_HOST,
) -> RevisionInfo:
    """Describe *revision* for *platform* relative to *cache_root*.

    The result is recomputed on every call; ``local`` reflects the filesystem
    at the time of the call.
    """

    ensure_supported(platform)
    folder_path = os.path.join(os.fspath(cache_root), f"{platform}-{revision}")
    executable_path = os.path.join(folder_path, relative_executable_path(platform, revision))
    return RevisionInfo(
        revision=revision,
        platform=platform,
        folder_path=folder_path,
        executable_path=executable_path,
        download_url=download_url(platform, revision, host=host),
        local=os.path.exists(executable_path),
    )


class BrowserFetcher:
    """Manage the local cache of downloaded Chromium revisions.

    The cache root holds one ``<platform>-<revision>`` folder per revision.
    Downloads are staged in a hidden temporary directory inside the cache root
    and published with a single rename, so readers never see a partially
    extracted folder.
    """

    def __init__(
        self,
        cache_root: str | os.PathLike[str],
        *,
        platform: str | None = None,
        host: str = DEFAULT_DOWNLOAD_HOST,
        timeout: float = 60.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._platform = ensure_supported(platform or current_platform())
        self._cache_root = Path(cache_root)
        self._host = host.rstrip("/")
        if http_client is None:
            self._client = httpx.AsyncClient(timeout=timeout, follow_redirects=True)
            self._owns_client = True
        else:
            self._client = http_client
            self._owns_client = False

    @property
    def platform(self) -> str:
        return self._platform

    @property
    def cache_root(self) -> Path:
        return self._cache_root

    async def __aenter__(self) -> BrowserFetcher:
        return self

    async def __aexit__(self, *_: object) -> None:
        await self.close()

    async def close(self) -> None:
        """Close the underlying HTTP client if this fetcher created it."""

        if self._owns_client:
            await self._client.aclose()

    def download_url(self, revision: str) -> str:
        return download_url(self._platform, revision, host=self._host)

    def revision_info(self, revision: str) -> RevisionInfo:
        return revision_info(self._platform, revision, self._cache_root, host=self._host)

    async def can_download(self, revision: str) -> bool:
        """Return ``True`` when the snapshot archive exists on the download host."""

        url = self.download_url(revision)
        try:
            response = await self._client.head(url)
        except httpx.HTTPError as exc:
            LOGGER.warning("Failed to check %s: %s", url, exc)
            return False
        return response.status_code == 200

    async def download(self, revision: str, progress: ProgressCallback | None = None) -> RevisionInfo:
        """Download and extract *revision* unless it is already cached."""

        info = self.revision_info(revision)
        if info.local:
            return info
        async with _folder_lock(info.folder_path):
            info = self.revision_info(revision)
            if info.local:
                return info
            await asyncio.to_thread(self._cache_root.mkdir, parents=True, exist_ok=True)
            staging = await asyncio.to_thread(
                tempfile.mkdtemp,
                prefix=f".{self._platform}-{revision}-",
                dir=str(self._cache_root),
            )
            archive_path = os.path.join(staging, "archive.zip")
            extract_dir = os.path.join(staging, "extracted")
            try:
                LOGGER.info("Downloading Chromium r%s from %s", revision, info.download_url)
                await self._fetch(info.download_url, archive_path, progress)
                await asyncio.to_thread(_extract_archive, archive_path, extract_dir)
                relative = relative_executable_path(self._platform, revision)
                staged_executable = os.path.join(extract_dir, relative)
                if not os.path.isfile(staged_executable):
                    raise DownloadError(
                        f"Archive for r{revision} does not contain {relative}"
                    )
                if self._platform != "win32" and self._platform != "win64":
                    _make_executable(staged_executable)
                await asyncio.to_thread(_publish, extract_dir, info.folder_path)
            finally:
                await asyncio.to_thread(shutil.rmtree, staging, True)
        LOGGER.info("Chromium r%s is available at %s", revision, info.folder_path)
        return self.revision_info(revision)

    def local_revisions(self) -> list[str]:
        """Return the revisions cached for this fetcher's platform."""

        if not self._cache_root.is_dir():
            return []
        prefix = f"{self._platform}-"
        revisions = []
        for entry in sorted(self._cache_root.iterdir()):
            if entry.is_dir() and entry.name.startswith(prefix):
                revisions.append(entry.name[len(prefix):])
        return revisions

    async def remove(self, revision: str) -> None:
        info = self.revision_info(revision)
        if not os.path.isdir(info.folder_path):
            raise ConfigurationError(f"Failed to remove: revision {revision} is not downloaded")
        async with _folder_lock(info.folder_path):
            await asyncio.to_thread(shutil.rmtree, info.folder_path)
        LOGGER.info("Removed Chromium r%s from %s", revision, self._cache_root)

    async def _fetch(self, url: str, destination: str, progress: ProgressCallback | None) -> None:
        try:
            async with self._client.stream("GET", url) as response:
                response.raise_for_status()
                total = int(response.headers.get("content-length", 0))
                received = 0
                with open(destination, "wb") as fh:
                    async for chunk in response.aiter_bytes():
                        fh.write(chunk)
                        received += len(chunk)
                        if progress is not None:
                            progress(received, total)
        except httpx.HTTPStatusError as exc:
            raise DownloadError(
                f"Download of {url} failed with status {exc.response.status_code}"
            ) from exc
        except httpx.HTTPError as exc:
            raise DownloadError(f"Download of {url} failed: {exc}") from exc


@contextlib.asynccontextmanager
async def _folder_lock(key: str) -> AsyncIterator[None]:
    """Serialize work on one revision folder; the entry lives only while in use."""

    entry = _DOWNLOAD_LOCKS.get(key)
    if entry is None:
        entry = _DOWNLOAD_LOCKS[key] = _FolderLock()
    entry.users += 1
    try:
        async with entry.lock:
            yield
    finally:
        entry.users -= 1
        if entry.users == 0 and _DOWNLOAD_LOCKS.get(key) is entry:
            del _DOWNLOAD_LOCKS[key]


def _extract_archive(archive_path: str, destination: str) -> None:
    root = os.path.realpath(destination)
    try:
        with zipfile.ZipFile(archive_path) as archive:
            for member in archive.infolist():
                mode = member.external_attr >> 16
                if stat.S_ISLNK(mode):
                    _extract_symlink(archive, member, root)
                    continue
                extracted = archive.extract(member, root)
                if (mode & 0o777) and not member.is_dir():
                    os.chmod(extracted, mode & 0o777)
    except zipfile.BadZipFile as exc:
        raise DownloadError(f"Downloaded archive {archive_path} is not a valid zip file") from exc


def _extract_symlink(archive: zipfile.ZipFile, member: zipfile.ZipInfo, root: str) -> None:
    link_path = os.path.normpath(os.path.join(root, member.filename))
    target = archive.read(member).decode("utf-8")
    resolved = os.path.normpath(os.path.join(os.path.dirname(link_path), target))
    if os.path.isabs(target) or not _within(root, link_path) or not _within(root, resolved):
        raise DownloadError(f"Archive entry {member.filename} links outside the extraction folder")
    os.makedirs(os.path.dirname(link_path), exist_ok=True)
    os.symlink(target, link_path)


def _within(root: str, path: str) -> bool:
    return path != root and os.path.commonpath([root, path]) == root


def _make_executable(path: str) -> None:
    mode = os.stat(path).st_mode
    os.chmod(path, mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)


def _publish(source: str, destination: str) -> None:
    if os.path.isdir(destination):
        # A folder without an executable is a leftover from an interrupted extraction.
        shutil.rmtree(destination)
    os.replace(source, destination)


__all__ = [
    "BrowserFetcher",
    "DOWNLOAD_URLS",
    "SUPPORTED_PLATFORMS",
    "archive_name",
    "current_platform",
    "download_url",
    "relative_executable_path",
    "revision_info",
]
