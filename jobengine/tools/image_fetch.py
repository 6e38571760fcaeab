from __future__ import annotations

import hashlib
import http.client
import logging
import socket
import time
import urllib.error
import urllib.request
from dataclasses import dataclass, field
from typing import Callable

from jobengine.config.load_config import FetchConfig
from jobengine.runtime.errors import RateLimitedError
from jobengine.storage.object_store import ObjectExistsError, ObjectStore, ObjectStoreError


logger = logging.getLogger(__name__)


class FetchError(RuntimeError):
    pass


_EXT_BY_CONTENT_TYPE = {
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/png": "png",
    "image/webp": "webp",
    "image/gif": "gif",
    "image/avif": "avif",
}


@dataclass(frozen=True)
class FetchItem:
    url: str
    owner_id: str
    ref: str | None = None


@dataclass(frozen=True)
class DownloadedImage:
    source_url: str
    ref: str | None
    storage_path: str
    public_url: str
    reused: bool = False


@dataclass(frozen=True)
class FailedImage:
    source_url: str
    ref: str | None
    error: str


@dataclass(frozen=True)
class BatchCompleted:
    downloaded: list[DownloadedImage] = field(default_factory=list)
    failed: list[FailedImage] = field(default_factory=list)
    remaining: list[FetchItem] = field(default_factory=list)


@dataclass(frozen=True)
class BatchRateLimited:
    downloaded: list[DownloadedImage] = field(default_factory=list)
    failed: list[FailedImage] = field(default_factory=list)
    remaining: list[FetchItem] = field(default_factory=list)
    rate_limited_url: str = ""


BatchOutcome = BatchCompleted | BatchRateLimited


def _http_get(url: str, *, timeout_s: float, user_agent: str) -> tuple[bytes, str]:
    """GET `url`, returning (body, content_type). 429 surfaces as RateLimitedError.

    Every other failure for this one URL, including a malformed URL or a body cut off
    mid-read, is raised as FetchError.
    """
    try:
        req = urllib.request.Request(url, headers={"User-Agent": user_agent, "Accept": "image/*"})
        with urllib.request.urlopen(req, timeout=float(timeout_s)) as resp:
            body = resp.read()
            content_type = str(resp.headers.get("Content-Type") or "")
    except urllib.error.HTTPError as e:
        if e.code == 429:
            raise RateLimitedError(url, retry_after=e.headers.get("Retry-After") if e.headers else None) from e
        raise FetchError(f"HTTP {e.code} for {url}") from e
    except (socket.timeout, TimeoutError) as e:
        raise FetchError(f"Timed out after {timeout_s}s for {url}") from e
    except urllib.error.URLError as e:
        raise FetchError(f"Network error for {url}: {e.reason}") from e
    except (http.client.HTTPException, ValueError, OSError) as e:
        raise FetchError(f"{type(e).__name__} for {url}: {e}") from e
    return body, content_type


def _extension_for(content_type: str) -> str:
    base = content_type.split(";", 1)[0].strip().lower()
    if base not in _EXT_BY_CONTENT_TYPE:
        raise FetchError(f"Unsupported content type: {content_type or '<missing>'}")
    return _EXT_BY_CONTENT_TYPE[base]


class RateLimitedImageFetcher:
    """Downloads a batch of images politely and stores them in the object store.

    - fixed delay between consecutive requests (none before the first);
    - per-request timeout; timeouts, bad URLs and storage errors are recorded and skipped;
    - the first 429 stops the batch: that item and everything after it are returned as `remaining`.
    """

    def __init__(
        self,
        config: FetchConfig,
        object_store: ObjectStore,
        *,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._config = config
        self._store = object_store
        self._sleep = sleep

    def storage_path(self, owner_id: str, body: bytes, ext: str, *, prefix: str | None = None) -> str:
        digest = hashlib.md5(body).hexdigest()[:12]
        return f"{prefix or self._config.storage_prefix}/{owner_id}/{digest}.{ext}"

    def _store_body(self, item: FetchItem, body: bytes, content_type: str, *, prefix: str | None) -> DownloadedImage:
        ext = _extension_for(content_type)
        path = self.storage_path(item.owner_id, body, ext, prefix=prefix)
        try:
            self._store.upload(path, body, content_type=content_type.split(";", 1)[0].strip())
            reused = False
        except ObjectExistsError:
            reused = True
        return DownloadedImage(
            source_url=item.url,
            ref=item.ref,
            storage_path=path,
            public_url=self._store.public_url(path),
            reused=reused,
        )

    def fetch_batch(self, items: list[FetchItem], *, prefix: str | None = None) -> BatchOutcome:
        downloaded: list[DownloadedImage] = []
        failed: list[FailedImage] = []
        delay_s = self._config.delay_ms / 1000.0

        for idx, item in enumerate(items):
            if idx > 0 and delay_s > 0:
                self._sleep(delay_s)
            try:
                body, content_type = _http_get(
                    item.url, timeout_s=self._config.timeout_s, user_agent=self._config.user_agent
                )
                downloaded.append(self._store_body(item, body, content_type, prefix=prefix))
            except RateLimitedError as e:
                logger.warning("rate limited at %s; %d item(s) deferred", e.url, len(items) - idx)
                return BatchRateLimited(
                    downloaded=downloaded,
                    failed=failed,
                    remaining=list(items[idx:]),
                    rate_limited_url=e.url,
                )
            except FetchError as e:
                logger.info("image fetch failed: %s", e)
                failed.append(FailedImage(source_url=item.url, ref=item.ref, error=str(e)))
            except (ObjectStoreError, OSError) as e:
                logger.warning("could not store image from %s: %s", item.url, e)
                failed.append(
                    FailedImage(source_url=item.url, ref=item.ref, error=f"Storage error: {type(e).__name__}: {e}")
                )

        return BatchCompleted(downloaded=downloaded, failed=failed, remaining=[])
