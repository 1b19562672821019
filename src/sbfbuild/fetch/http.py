"""Integrity-checked toolchain archive download with bounded retry."""

from __future__ import annotations

import hashlib
import tempfile
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from http.client import HTTPException, IncompleteRead
from pathlib import Path
from typing import IO, Any, BinaryIO
from urllib.error import URLError
from urllib.request import Request, urlopen

from sbfbuild.errors import CacheIOError, IntegrityError, NetworkError, NotFoundError
from sbfbuild.fetch.retry import RetryPolicy, classify_failure, next_retry
from sbfbuild.models import ToolchainSpec
from sbfbuild.observability import StructuredLogger
from sbfbuild.policy import Policy, ensure_integrity_available, ensure_network_allowed

USER_AGENT = "sbfbuild"
CHUNK_SIZE = 1 << 20
DOWNLOADS_DIRNAME = ".downloads"
PART_SUFFIX = ".part"

Opener = Callable[[Request, float], Any]


def _default_opener(request: Request, timeout: float) -> Any:
    return urlopen(request, timeout=timeout)  # noqa: S310 - fixed artifact host, verified below


class Fetcher:
    """Downloads a toolchain archive to a temporary file and verifies it.

    The archive is only handed out after every available check passed; a
    rejected download is deleted before the error propagates.
    """

    def __init__(
        self,
        *,
        download_dir: str | Path,
        policy: Policy | None = None,
        retry: RetryPolicy | None = None,
        timeout: float = 60.0,
        opener: Opener | None = None,
        sleep: Callable[[float], None] = time.sleep,
        logger: StructuredLogger | None = None,
    ) -> None:
        self.download_dir = Path(download_dir)
        self.policy = policy or Policy()
        self.retry = retry or RetryPolicy()
        self.timeout = timeout
        self._open = opener or _default_opener
        self._sleep = sleep
        self.logger = logger
        self.calls = 0

    @contextmanager
    def fetch(self, spec: ToolchainSpec) -> Iterator[BinaryIO]:
        """Yield a readable, verified archive stream for *spec*."""
        ensure_network_allowed(policy=self.policy, operation="fetch", version=spec.version)
        ensure_integrity_available(policy=self.policy, sha256=spec.sha256, version=spec.version)
        self.calls += 1
        try:
            self.download_dir.mkdir(parents=True, exist_ok=True)
            sink = tempfile.NamedTemporaryFile(
                dir=self.download_dir,
                prefix=_download_prefix(spec),
                suffix=PART_SUFFIX,
            )
        except OSError as exc:
            raise CacheIOError(
                "Unable to create a download file in the cache directory.",
                hint="Check free space and permissions on the cache directory.",
                context={"operation": "fetch", "path": str(self.download_dir), "error": str(exc)},
            ) from exc
        with sink:
            _, digest = self._download(spec, sink)
            self._verify(spec, digest=digest)
            sink.seek(0)
            yield sink

    def sweep_stale(self, spec: ToolchainSpec) -> int:
        """Delete downloads of *spec* abandoned by a killed process.

        Only safe while holding the install lock for the version.
        """
        if not self.download_dir.is_dir():
            return 0
        swept = 0
        for stale in self.download_dir.glob(_download_prefix(spec) + "*" + PART_SUFFIX):
            try:
                stale.unlink()
            except FileNotFoundError:
                continue
            except OSError as exc:
                raise CacheIOError(
                    "Unable to remove a stale download.",
                    hint="Check permissions on the cache directory.",
                    context={"operation": "fetch", "path": str(stale), "error": str(exc)},
                ) from exc
            swept += 1
        if swept:
            self._log(f"removed {swept} stale download(s)", spec=spec)
        return swept

    def _download(self, spec: ToolchainSpec, sink: IO[bytes]) -> tuple[int, str]:
        attempt = 0
        while True:
            attempt += 1
            self._log(f"downloading {spec.url} (attempt {attempt})", spec=spec)
            try:
                return self._download_once(spec, sink)
            except (URLError, HTTPException, OSError) as exc:
                kind = classify_failure(exc)
                context = {
                    "operation": "fetch",
                    "url": spec.url,
                    "version": spec.version,
                    "attempts": str(attempt),
                    "error": str(exc),
                }
                if kind == "not_found":
                    raise NotFoundError(
                        f"Toolchain {spec.version} is not available for {spec.platform}.",
                        hint="Check the requested version; it does not exist upstream.",
                        context=context,
                    ) from exc
                decision = next_retry(attempt, kind, self.retry)
                if not decision.retry:
                    raise NetworkError(
                        "Toolchain download failed.",
                        hint="Check network access and proxy settings, then retry.",
                        context=context,
                    ) from exc
                self._log(
                    f"transient failure ({exc}); retrying in {decision.delay:g}s",
                    spec=spec,
                    level="warning",
                )
                self._sleep(decision.delay)

    def _download_once(self, spec: ToolchainSpec, sink: IO[bytes]) -> tuple[int, str]:
        sink.seek(0)
        sink.truncate()
        request = Request(spec.url, headers={"User-Agent": USER_AGENT})
        digest = hashlib.sha256()
        size = 0
        with self._open(request, self.timeout) as response:
            declared = _content_length(response)
            while chunk := response.read(CHUNK_SIZE):
                try:
                    sink.write(chunk)
                except OSError as exc:
                    raise CacheIOError(
                        "Writing the downloaded archive failed.",
                        hint="Check free space on the cache directory.",
                        context={"operation": "fetch", "error": str(exc)},
                    ) from exc
                digest.update(chunk)
                size += len(chunk)
        if declared is not None and declared != size:
            raise IncompleteRead(b"", declared - size)
        sink.flush()
        return size, digest.hexdigest()

    def _verify(self, spec: ToolchainSpec, *, digest: str) -> None:
        if spec.sha256 is not None and spec.sha256.lower() != digest:
            raise IntegrityError(
                "Downloaded toolchain archive hash mismatch.",
                hint="Update the pinned sha256 or check the mirror serving the archive.",
                context={
                    "operation": "fetch",
                    "url": spec.url,
                    "expected": spec.sha256,
                    "actual": digest,
                },
            )

    def _log(self, message: str, *, spec: ToolchainSpec, level: str = "info") -> None:
        if self.logger is not None:
            self.logger.log(
                operation="fetch",
                stage="fetch",
                message=message,
                toolchain=spec.version,
                level=level,
            )


def _download_prefix(spec: ToolchainSpec) -> str:
    return f"{spec.version}-{spec.platform}-"


def _content_length(response: Any) -> int | None:
    headers = getattr(response, "headers", None)
    if headers is None:
        return None
    raw = headers.get("Content-Length")
    if raw is None:
        return None
    try:
        return int(raw)
    except ValueError:
        return None


__all__ = ["CHUNK_SIZE", "DOWNLOADS_DIRNAME", "PART_SUFFIX", "Fetcher", "Opener", "USER_AGENT"]
