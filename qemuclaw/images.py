"""VM image acquisition: release discovery, download, reassembly and verification."""

from __future__ import annotations

import hashlib
import io
import json
import shutil
import tarfile
import tempfile
import time
import zlib
from pathlib import Path
from typing import Any, Callable, Iterable, Iterator, List, Optional, Tuple
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from qemuclaw.constants import (
    DOWNLOAD_CHUNK,
    GITHUB_API,
    HTTP_TIMEOUT,
    IMAGE_FILENAME,
    IMAGE_SUFFIX,
    IMAGE_TAG_PREFIX,
    PROGRESS_INTERVAL,
    RELEASE_REPO,
    RELEASES_MAX_PAGES,
    RELEASES_PER_PAGE,
    SCRATCH_DIRNAME,
    USER_AGENT,
)
from qemuclaw.exceptions import (
    ChecksumMismatchError,
    DownloadHTTPError,
    ExtractionError,
    NoImageAssetsError,
    NoImageReleaseError,
)
from qemuclaw.models import DownloadProgress, ImageResult, Release, ReleaseAsset
from qemuclaw.utils import ensure_directory, format_mib, log

ProgressCallback = Callable[[DownloadProgress], None]

_MIB = 1024 * 1024


def verify_checksum(path: Path, expected_hex: str) -> bool:
    """Stream ``path`` through SHA-256 and compare with ``expected_hex``."""
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(DOWNLOAD_CHUNK), b""):
            digest.update(chunk)
    return digest.hexdigest() == expected_hex.strip().lower()


def sort_split_parts(assets: Iterable[ReleaseAsset]) -> List[ReleaseAsset]:
    """Split parts in reassembly order (``.aa``, ``.ab``, ...)."""
    return sorted((a for a in assets if a.is_split_part), key=lambda a: a.name)


class ProgressMeter:
    """Cumulative byte counter that reports to a callback at most every ``interval`` seconds."""

    def __init__(
        self,
        total: int,
        callback: Optional[ProgressCallback] = None,
        status: str = "",
        interval: float = PROGRESS_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.total = total
        self.callback = callback
        self.status = status
        self.interval = interval
        self.clock = clock
        self.downloaded = 0
        self.started = clock()
        self._last_emit: Optional[float] = None

    def snapshot(self, final: bool = False) -> DownloadProgress:
        elapsed = self.clock() - self.started
        speed = self.downloaded / elapsed / _MIB if elapsed > 0 else 0.0
        if final:
            percent = 100
        elif self.total > 0:
            percent = min(100, self.downloaded * 100 // self.total)
        else:
            percent = 0
        return DownloadProgress(self.downloaded, self.total, percent, round(speed, 2), self.status)

    def advance(self, nbytes: int) -> None:
        self.downloaded += nbytes
        if self.callback is None:
            return
        now = self.clock()
        if self._last_emit is not None and now - self._last_emit < self.interval:
            return
        self._last_emit = now
        self.callback(self.snapshot())

    def finish(self) -> None:
        if self.callback is not None:
            self.callback(self.snapshot(final=True))


class _ConcatReader(io.RawIOBase):
    """Read several files back to back as one stream."""

    def __init__(self, paths: Iterable[Path]) -> None:
        super().__init__()
        self._paths: Iterator[Path] = iter(paths)
        self._current: Optional[io.BufferedReader] = None

    def readable(self) -> bool:
        return True

    def readinto(self, buffer) -> int:
        while True:
            if self._current is None:
                path = next(self._paths, None)
                if path is None:
                    return 0
                self._current = open(path, "rb")
            count = self._current.readinto(buffer)
            if count:
                return count
            self._current.close()
            self._current = None

    def close(self) -> None:
        if self._current is not None:
            self._current.close()
            self._current = None
        super().close()


def extract_split_archive(parts: List[Path], target: Path) -> None:
    """Concatenate ``parts`` in order and unpack the resulting tar.gz into ``target``."""
    ensure_directory(target)
    try:
        with io.BufferedReader(_ConcatReader(parts), buffer_size=DOWNLOAD_CHUNK) as stream:
            with tarfile.open(fileobj=stream, mode="r|gz") as archive:
                archive.extractall(target, filter="data")
    except (tarfile.TarError, EOFError, zlib.error, OSError) as exc:
        raise ExtractionError(f"Failed to extract image archive: {exc}") from exc


def _single_image(root: Path) -> Path:
    images = sorted(p for p in root.rglob(f"*{IMAGE_SUFFIX}") if p.is_file())
    if not images:
        raise ExtractionError(f"No {IMAGE_SUFFIX} file found in extracted archive")
    if len(images) > 1:
        names = ", ".join(p.name for p in images)
        raise ExtractionError(f"Expected exactly one {IMAGE_SUFFIX} file in archive, found {len(images)}: {names}")
    return images[0]


class ImageDownloader:
    """Fetches the newest ``vm-*`` release of the boot image."""

    def __init__(
        self,
        repo: str = RELEASE_REPO,
        api_base: str = GITHUB_API,
        progress_interval: float = PROGRESS_INTERVAL,
    ) -> None:
        self.repo = repo
        self.api_base = api_base.rstrip("/")
        self.progress_interval = progress_interval

    # ---- HTTP ----
    def _open(self, url: str, accept: Optional[str] = None) -> Any:
        headers = {"User-Agent": USER_AGENT}
        if accept:
            headers["Accept"] = accept
        req = Request(url, headers=headers)
        try:
            response = urlopen(req, timeout=HTTP_TIMEOUT)
        except HTTPError as exc:
            raise DownloadHTTPError(url, exc.code, str(exc.reason)) from exc
        except URLError as exc:
            raise DownloadHTTPError(url, None, str(exc.reason)) from exc
        status = getattr(response, "status", 200)
        if status != 200:
            response.close()
            raise DownloadHTTPError(url, status)
        return response

    def _get_json(self, url: str) -> Any:
        with self._open(url, accept="application/vnd.github+json") as response:
            body = response.read()
        try:
            return json.loads(body)
        except ValueError as exc:
            raise DownloadHTTPError(url, None, f"invalid JSON response: {exc}") from exc

    # ---- releases ----
    def list_releases(self) -> List[Release]:
        releases: List[Release] = []
        for page in range(1, RELEASES_MAX_PAGES + 1):
            url = f"{self.api_base}/repos/{self.repo}/releases?per_page={RELEASES_PER_PAGE}&page={page}"
            data = self._get_json(url)
            if not isinstance(data, list) or not data:
                break
            releases.extend(Release.from_api(item) for item in data)
            if len(data) < RELEASES_PER_PAGE:
                break
        log("DEBUG", f"Fetched {len(releases)} releases from {self.repo}")
        return releases

    def get_latest_image_release(self) -> Release:
        """Newest release tagged ``vm-*``; application releases share the list."""
        for release in self.list_releases():
            if release.tag.startswith(IMAGE_TAG_PREFIX):
                return release
        raise NoImageReleaseError(f"No VM image release (tag '{IMAGE_TAG_PREFIX}*') found in {self.repo}")

    def check_for_update(self, current_version: Optional[str]) -> Optional[str]:
        latest = self.get_latest_image_release()
        if latest.tag == current_version:
            return None
        return latest.tag

    @staticmethod
    def select_assets(release: Release) -> Tuple[Optional[ReleaseAsset], List[ReleaseAsset], Optional[ReleaseAsset]]:
        """Return ``(whole_image, split_parts, checksum)`` for a release."""
        image = next((a for a in release.assets if a.is_image), None)
        parts = sort_split_parts(release.assets)
        checksum = next((a for a in release.assets if a.is_checksum), None)
        if image is None and not parts:
            raise NoImageAssetsError(f"Release {release.tag} has no image or split-part assets")
        return image, parts, checksum

    # ---- download ----
    def download_file(
        self,
        url: str,
        dest: Path,
        on_progress: Optional[ProgressCallback] = None,
        meter: Optional[ProgressMeter] = None,
    ) -> int:
        """Stream ``url`` to ``dest`` via a temporary file in the same directory.

        With ``meter`` the bytes are added to a shared running total instead
        of reporting per-file progress.
        """
        log("INFO", f"Downloading {dest.name}: {url}")
        ensure_directory(dest.parent)
        response = self._open(url)
        own_meter = meter is None
        if meter is None:
            length = response.headers.get("Content-Length") if response.headers else None
            meter = ProgressMeter(
                int(length) if length else 0,
                on_progress,
                status=f"Downloading {dest.name}",
                interval=self.progress_interval,
            )

        downloaded = 0
        tmp_path: Optional[Path] = None
        try:
            with response, tempfile.NamedTemporaryFile(delete=False, dir=dest.parent, suffix=".part") as tmp:
                tmp_path = Path(tmp.name)
                while True:
                    chunk = response.read(DOWNLOAD_CHUNK)
                    if not chunk:
                        break
                    tmp.write(chunk)
                    downloaded += len(chunk)
                    meter.advance(len(chunk))
            tmp_path.replace(dest)
        except BaseException:
            if tmp_path is not None:
                tmp_path.unlink(missing_ok=True)
            raise

        if own_meter:
            meter.finish()
        log("DEBUG", f"Downloaded {format_mib(downloaded)} to {dest}")
        return downloaded

    def _fetch_checksum(self, asset: ReleaseAsset) -> str:
        with self._open(asset.url) as response:
            text = response.read().decode("utf-8", errors="replace")
        fields = text.split()
        expected = fields[0].lower() if fields else ""
        if len(expected) != 64 or any(c not in "0123456789abcdef" for c in expected):
            raise ChecksumMismatchError(f"Checksum asset {asset.name} does not contain a SHA-256 digest")
        return expected

    def _verify(self, path: Path, checksum: Optional[ReleaseAsset]) -> None:
        if checksum is None:
            return
        expected = self._fetch_checksum(checksum)
        log("INFO", f"Verifying {path.name} against {checksum.name}...")
        if not verify_checksum(path, expected):
            path.unlink(missing_ok=True)
            raise ChecksumMismatchError(f"SHA-256 mismatch for {path.name}; the download was discarded")
        log("SUCCESS", "Checksum OK")

    # ---- pipeline ----
    def download_and_extract_image(
        self,
        dest_dir: Path,
        on_progress: Optional[ProgressCallback] = None,
    ) -> ImageResult:
        """Fetch the newest image release into ``dest_dir``.

        Everything is staged in a scratch directory; the existing image is
        replaced only once the new one has been extracted and verified.
        """
        release = self.get_latest_image_release()
        image, parts, checksum = self.select_assets(release)
        final_path = dest_dir / IMAGE_FILENAME
        ensure_directory(dest_dir)
        log("INFO", f"Selected image release {release.tag}")

        scratch = dest_dir / SCRATCH_DIRNAME
        if scratch.exists():
            shutil.rmtree(scratch)
        ensure_directory(scratch)
        try:
            if image is not None:
                log("INFO", f"Downloading image {image.name} ({format_mib(image.size)})")
                found = scratch / IMAGE_FILENAME
                self.download_file(image.url, found, on_progress)
            else:
                found = self._download_parts(parts, scratch, on_progress)
            self._verify(found, checksum)
            found.replace(final_path)
        except BaseException:
            shutil.rmtree(scratch, ignore_errors=True)
            raise
        shutil.rmtree(scratch, ignore_errors=True)
        log("SUCCESS", f"Image ready at {final_path}")
        return ImageResult(release.tag, final_path)

    def _download_parts(
        self,
        parts: List[ReleaseAsset],
        scratch: Path,
        on_progress: Optional[ProgressCallback],
    ) -> Path:
        total = sum(p.size for p in parts)
        log("INFO", f"Downloading {len(parts)} image parts ({format_mib(total)})")
        meter = ProgressMeter(total, on_progress, status="Downloading image parts", interval=self.progress_interval)
        part_paths: List[Path] = []
        for index, part in enumerate(parts, start=1):
            meter.status = f"Downloading part {index}/{len(parts)}"
            part_path = scratch / part.name
            self.download_file(part.url, part_path, meter=meter)
            part_paths.append(part_path)
        meter.status = "Extracting image"
        meter.finish()

        log("INFO", "Reassembling and extracting image archive...")
        extracted = scratch / "extracted"
        extract_split_archive(part_paths, extracted)
        found = _single_image(extracted)
        if found.name != IMAGE_FILENAME:
            log("DEBUG", f"Renaming {found.name} to {IMAGE_FILENAME}")
        return found
