"""Object storage access: signed URLs and windowed range downloads."""
import logging
import time
from dataclasses import dataclass
from typing import Callable, Iterator, Optional
from urllib.parse import quote

import httpx
import tenacity
from tenacity import retry_if_exception_type, stop_after_attempt, wait_exponential

from registry_import.exceptions import DownloadError, SignedUrlError

logger = logging.getLogger(__name__)


class TransientStorageError(Exception):
    """Storage answered with a status worth retrying (5xx, 429)."""


class SignedUrlRejected(Exception):
    """Storage refused to sign the object (missing object, bad key)."""


RETRYABLE_ERRORS = (httpx.TransportError, TransientStorageError)


@dataclass(frozen=True)
class Segment:
    """Decoded run of complete lines and the byte range it covers in the object."""

    text: str
    start: int
    end: int


class SupabaseStorage:
    """Minimal client for the Supabase Storage REST API."""

    def __init__(self, base_url: str, service_key: str, http: httpx.Client):
        self.base_url = base_url.rstrip("/")
        self.service_key = service_key
        self.http = http

    def create_signed_url(self, bucket: str, path: str, expires_in: int) -> str:
        """
        Create a time-limited URL that reads ``bucket/path`` without credentials.

        Args:
            bucket: Storage bucket name
            path: Object path inside the bucket
            expires_in: URL lifetime in seconds

        Returns:
            Absolute signed URL
        """
        response = self.http.post(
            f"{self.base_url}/storage/v1/object/sign/{quote(bucket)}/{quote(path)}",
            json={"expiresIn": expires_in},
            headers={
                "Authorization": f"Bearer {self.service_key}",
                "apikey": self.service_key,
            },
        )
        _raise_for_transient(response)
        if response.status_code != 200:
            raise SignedUrlRejected(f"HTTP {response.status_code}: {response.text[:200]}")

        signed = response.json().get("signedURL") or response.json().get("signedUrl")
        if not signed:
            raise SignedUrlRejected("Storage response did not contain a signed URL")
        if signed.startswith("http"):
            return signed
        return f"{self.base_url}/storage/v1{signed}"


def _raise_for_transient(response: httpx.Response) -> None:
    if response.status_code == 429 or response.status_code >= 500:
        raise TransientStorageError(f"HTTP {response.status_code}")


class ChunkedDownloader:
    """
    Stream a remote object through fixed-size HTTP range requests.

    Each window may end in the middle of a line. The incomplete tail is held
    back as raw bytes and prepended to the next window, so every emitted
    segment consists of whole lines and concatenating the segments reproduces
    the object exactly.
    """

    def __init__(
        self,
        storage: SupabaseStorage,
        window_bytes: int = 2 * 1024 * 1024,
        max_attempts: int = 5,
        initial_delay: float = 2.0,
        backoff_multiplier: float = 1.5,
        signed_url_ttl: int = 3600,
        settle_seconds: float = 3.0,
        fallback_encoding: str = "cp1252",
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.storage = storage
        self.window_bytes = window_bytes
        self.max_attempts = max_attempts
        self.initial_delay = initial_delay
        self.backoff_multiplier = backoff_multiplier
        self.signed_url_ttl = signed_url_ttl
        self.settle_seconds = settle_seconds
        self.fallback_encoding = fallback_encoding
        self._sleep = sleep

    def _retrying(self, retry_on) -> tenacity.Retrying:
        return tenacity.Retrying(
            retry=retry_if_exception_type(retry_on),
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.initial_delay, exp_base=self.backoff_multiplier),
            sleep=self._sleep,
            before_sleep=_log_retry,
            reraise=False,
        )

    def signed_url(self, bucket: str, path: str) -> str:
        """Create a signed URL, retrying with exponential backoff."""
        retry_on = RETRYABLE_ERRORS + (SignedUrlRejected,)
        try:
            for attempt in self._retrying(retry_on):
                with attempt:
                    url = self.storage.create_signed_url(bucket, path, self.signed_url_ttl)
        except tenacity.RetryError as exc:
            reason = exc.last_attempt.exception()
            logger.error(f"❌ Signed URL creation failed for {bucket}/{path}: {reason}")
            raise SignedUrlError(bucket, path, self.max_attempts, str(reason)) from reason

        logger.info(f"✅ Created signed URL for {bucket}/{path}")
        return url

    def _get(self, url: str, headers: Optional[dict] = None) -> httpx.Response:
        try:
            for attempt in self._retrying(RETRYABLE_ERRORS):
                with attempt:
                    response = self.storage.http.get(url, headers=headers)
                    _raise_for_transient(response)
        except tenacity.RetryError as exc:
            reason = exc.last_attempt.exception()
            raise DownloadError(f"Download failed after {self.max_attempts} attempts: {reason}") from reason
        return response

    def segments(
        self,
        bucket: str,
        path: str,
        start_offset: int = 0,
        should_stop: Optional[Callable[[], bool]] = None,
    ) -> Iterator[Segment]:
        """
        Yield decoded segments covering the object from ``start_offset`` to its end.

        ``start_offset`` must fall on a line boundary (a previous segment's end).
        ``should_stop`` is asked before every window after the first; when it
        returns True the stream ends early without emitting the held-back tail.
        """
        logger.info(f"📥 Starting download for {bucket}/{path} at byte {start_offset}")
        self._sleep(self.settle_seconds)  # object storage may lag behind a fresh upload
        url = self.signed_url(bucket, path)

        offset = start_offset
        segment_start = start_offset
        leftover = b""
        while True:
            if offset != start_offset and should_stop is not None and should_stop():
                logger.info(f"⏹️ Stopping download of {bucket}/{path} at byte {offset}")
                return
            logger.debug(f"📥 Downloading window at offset {offset}")
            response = self._get(
                url, headers={"Range": f"bytes={offset}-{offset + self.window_bytes - 1}"}
            )

            if response.status_code == 416:
                # Previous window ended exactly at the end of the object.
                break
            if response.status_code not in (200, 206):
                raise DownloadError(
                    f"HTTP {response.status_code} while reading {bucket}/{path}"
                )

            body = response.content
            if response.status_code == 200 and offset > 0:
                # Range ignored: the body is the whole object.
                body = body[offset:]

            data = leftover + body
            cut = data.rfind(b"\n")
            if cut >= 0:
                complete, leftover = data[: cut + 1], data[cut + 1 :]
                yield Segment(
                    text=self._decode(complete, segment_start),
                    start=segment_start,
                    end=segment_start + len(complete),
                )
                segment_start += len(complete)
            else:
                leftover = data

            if response.status_code == 200 or len(body) < self.window_bytes:
                logger.info(f"✅ Reached end of {bucket}/{path}")
                break
            offset += len(body)

        if leftover:
            yield Segment(
                text=self._decode(leftover, segment_start),
                start=segment_start,
                end=segment_start + len(leftover),
            )
        logger.info(f"✅ Download completed for {bucket}/{path}")

    def download_all(self, bucket: str, path: str) -> bytes:
        """Fetch the whole object in one request (for formats that cannot stream)."""
        logger.info(f"📥 Downloading whole object {bucket}/{path}")
        self._sleep(self.settle_seconds)
        url = self.signed_url(bucket, path)
        response = self._get(url)
        if response.status_code != 200:
            raise DownloadError(f"HTTP {response.status_code} while reading {bucket}/{path}")
        logger.info(f"📊 Downloaded {len(response.content)} bytes from {bucket}/{path}")
        return response.content

    def _decode(self, raw: bytes, start: int) -> str:
        encoding = "utf-8-sig" if start == 0 else "utf-8"
        try:
            return raw.decode(encoding)
        except UnicodeDecodeError:
            logger.warning(
                f"⚠️ Segment at byte {start} is not valid UTF-8, decoding as {self.fallback_encoding}"
            )
            return raw.decode(self.fallback_encoding, errors="replace")


def _log_retry(retry_state: tenacity.RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    delay = retry_state.next_action.sleep if retry_state.next_action else 0
    logger.warning(
        f"⚠️ Storage attempt {retry_state.attempt_number} failed ({exc}), retrying in {delay:.1f}s"
    )
