"""
Client for the external media-merge service (images/videos + audio -> video).

The service runs in a container that goes to sleep when idle and answers with
HTML error pages while it is waking up or after a crash. Nothing in here raises
on provider trouble: every call returns a `MergeResult` or `ProviderHealth` so
that the caller can always persist what happened.
"""
from __future__ import annotations

import json
import re
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple
from urllib.parse import urljoin

import requests

from ..config import settings
from ..logger import logger


HEALTHY_STATUSES = (200, 301, 302, 405)
SLEEPING_STATUSES = (502, 503)

SLEEPING_MARKERS = (
    "sleeping",
    "starting up",
    "bad gateway",
    "is building",
    "space is paused",
    "waking up",
)
# Checked against the <title> only, where a bare status code means an error page.
HTML_ERROR_TITLE_MARKERS = (
    "error",
    "not found",
    "404",
    "500",
    "502",
    "503",
    "unavailable",
    "bad gateway",
)
# Phrases proxy and hosting error pages put in the body.
HTML_ERROR_SIGNATURES = (
    "bad gateway",
    "gateway timeout",
    "service unavailable",
    "internal server error",
    "application error",
    "404 not found",
    "page not found",
    "space is paused",
    "is sleeping",
    "starting up",
    "is building",
)

_TITLE_RE = re.compile(r"<title[^>]*>(.*?)</title>", re.IGNORECASE | re.DOTALL)

MERGE_PROCESSING = "processing"
MERGE_COMPLETED = "completed"
MERGE_FAILED = "failed"

_COMPLETED_ALIASES = ("completed", "complete", "done", "success", "succeeded", "finished")
_FAILED_ALIASES = ("failed", "failure", "error", "cancelled", "canceled")


@dataclass
class ProviderHealth:
    healthy: bool
    is_sleeping: bool
    status: Optional[int]
    response_time_ms: int
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "healthy": self.healthy,
            "is_sleeping": self.is_sleeping,
            "status": self.status,
            "response_time_ms": self.response_time_ms,
            "error": self.error,
        }


@dataclass
class MergeResult:
    status: str
    progress: int = 0
    output_url: Optional[str] = None
    job_id: Optional[str] = None
    error: Optional[str] = None
    # False for permanent failures (explicit rejection, lost job); True when the
    # provider simply could not be reached and a later attempt may succeed.
    retryable: bool = False


def looks_like_json(text: str) -> bool:
    stripped = (text or "").lstrip()
    return stripped.startswith("{") or stripped.startswith("[")


def is_html_error_page(text: str, status: Optional[int] = None) -> bool:
    """
    True for HTML bodies that look like a proxy/error page.

    JSON bodies are never error pages, even if they mention "404" somewhere.
    Below 500, an HTML page counts only when its <title> or a known error phrase
    says so; stray words in styles or copy do not.
    """
    if not text or looks_like_json(text):
        return False
    head = text.lstrip()[:4000].lower()
    is_html = head.startswith("<!doctype html") or head.startswith("<html") or "<head" in head or "<body" in head
    if not is_html:
        return False
    if status is not None and status >= 500:
        return True
    title = _TITLE_RE.search(head)
    if title and any(marker in title.group(1) for marker in HTML_ERROR_TITLE_MARKERS):
        return True
    return any(signature in head for signature in HTML_ERROR_SIGNATURES)


def looks_sleeping(text: str, status: Optional[int]) -> bool:
    if status in SLEEPING_STATUSES:
        return True
    if not text or looks_like_json(text):
        return False
    low = text[:4000].lower()
    return any(marker in low for marker in SLEEPING_MARKERS)


def normalize_status(raw: Any) -> str:
    value = str(raw or "").strip().lower()
    if value in _COMPLETED_ALIASES:
        return MERGE_COMPLETED
    if value in _FAILED_ALIASES:
        return MERGE_FAILED
    return MERGE_PROCESSING


def normalize_progress(raw: Any) -> int:
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return 0
    # Fractions: 0.4 is 40%, and a float 1.0 is done. An integer 1 stays 1%.
    if 0 < value < 1 or (isinstance(raw, float) and value == 1.0):
        value *= 100
    return int(max(0, min(100, round(value))))


def _first_str(data: Dict[str, Any], keys: Sequence[str]) -> Optional[str]:
    for key in keys:
        value = data.get(key)
        if isinstance(value, (str, int)) and str(value).strip():
            return str(value).strip()
    return None


class RenderProviderClient:
    def __init__(
        self,
        base_url: Optional[str] = None,
        token: Optional[str] = None,
        session: Optional[requests.Session] = None,
        health_timeout: Optional[float] = None,
        merge_timeout: Optional[float] = None,
        status_timeout: Optional[float] = None,
        wake_delays: Optional[Sequence[float]] = None,
        settle_seconds: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.base_url = (base_url or settings.RENDER_BASE_URL).rstrip("/")
        self.token = settings.RENDER_API_TOKEN if token is None else token
        self.session = session or requests.Session()
        self.health_timeout = health_timeout or settings.RENDER_HEALTH_TIMEOUT
        self.merge_timeout = merge_timeout or settings.RENDER_MERGE_TIMEOUT
        self.status_timeout = status_timeout or settings.RENDER_STATUS_TIMEOUT
        self.wake_delays = tuple(wake_delays if wake_delays is not None else settings.RENDER_WAKE_DELAYS)
        self.settle_seconds = settings.RENDER_WAKE_SETTLE_SECONDS if settle_seconds is None else settle_seconds
        self.sleep = sleep

    def _headers(self, json_body: bool = False) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        if json_body:
            headers["Content-Type"] = "application/json"
        return headers

    def absolute_url(self, url: str) -> str:
        if url.startswith("http://") or url.startswith("https://"):
            return url
        return urljoin(self.base_url + "/", url.lstrip("/"))

    # ----- health -----

    def health_check(self) -> ProviderHealth:
        started = time.monotonic()
        try:
            response = self.session.get(
                self.base_url + "/",
                headers=self._headers(),
                timeout=self.health_timeout,
                allow_redirects=False,
            )
        except requests.RequestException as e:
            elapsed = int((time.monotonic() - started) * 1000)
            logger.warning(f"Render provider health check failed: {e}")
            return ProviderHealth(False, False, None, elapsed, f"Provider unreachable: {e}")

        elapsed = int((time.monotonic() - started) * 1000)
        text = response.text or ""
        status = response.status_code
        html_error = is_html_error_page(text, status)

        if html_error or status in SLEEPING_STATUSES or status not in HEALTHY_STATUSES:
            sleeping = looks_sleeping(text, status)
            error = (
                f"Provider is sleeping or starting up (HTTP {status})"
                if sleeping
                else f"Provider returned {'an HTML error page' if html_error else 'an error'} (HTTP {status})"
            )
            logger.info(
                "Render provider unhealthy",
                extra={"status_code": status, "is_sleeping": sleeping, "response_time_ms": elapsed},
            )
            return ProviderHealth(False, sleeping, status, elapsed, error)

        return ProviderHealth(True, False, status, elapsed)

    def wake_up(self, max_attempts: Optional[int] = None) -> bool:
        """
        Wait with growing pauses and ping the provider until it answers below 500,
        then give the container a moment to settle.
        """
        attempts = max_attempts or len(self.wake_delays) or 1
        for attempt in range(attempts):
            if self.wake_delays:
                self.sleep(self.wake_delays[min(attempt, len(self.wake_delays) - 1)])
            try:
                response = self.session.get(self.base_url + "/", headers=self._headers(), timeout=self.health_timeout)
                if response.status_code < 500 and not is_html_error_page(response.text or ""):
                    logger.info(f"Render provider awake after {attempt + 1} attempt(s)")
                    if self.settle_seconds:
                        self.sleep(self.settle_seconds)
                    return True
                logger.info(f"Render provider still waking (HTTP {response.status_code}), attempt {attempt + 1}/{attempts}")
            except requests.RequestException as e:
                logger.info(f"Wake-up ping failed: {e}, attempt {attempt + 1}/{attempts}")
        logger.warning(f"Render provider did not wake up after {attempts} attempts")
        return False

    def ensure_ready(self) -> Optional[str]:
        """Returns an error message when the provider cannot take work, else None."""
        health = self.health_check()
        if health.healthy:
            return None
        if health.is_sleeping:
            if self.wake_up():
                return None
            return "Render provider is sleeping and did not wake up in time"
        return health.error or "Render provider is unavailable"

    # ----- merge -----

    def _parse_payload(self, payload: Any, url_means_done: bool = False) -> MergeResult:
        if not isinstance(payload, dict):
            return MergeResult(MERGE_FAILED, error=f"Unexpected provider response: {str(payload)[:200]}")

        nested = {}
        for key in ("result", "data"):
            if isinstance(payload.get(key), dict):
                nested = payload[key]
                break

        job_id = _first_str(payload, ("job_id", "jobId", "id")) or _first_str(nested, ("job_id", "jobId", "id"))
        url_keys = ("output_url", "outputUrl", "url", "video_url", "videoUrl")
        output_url = _first_str(payload, url_keys) or _first_str(nested, url_keys)
        if output_url:
            output_url = self.absolute_url(output_url)

        raw_status = payload.get("status") or nested.get("status")
        error = payload.get("error") or nested.get("error")
        status = normalize_status(raw_status)
        if error and not raw_status:
            status = MERGE_FAILED
        # A finished file URL settles the merge, except when a freshly started job
        # announces where its output will eventually appear.
        if status == MERGE_PROCESSING and output_url and (url_means_done or not job_id):
            status = MERGE_COMPLETED

        progress = normalize_progress(payload.get("progress", nested.get("progress")))
        if status == MERGE_COMPLETED:
            progress = 100
        if status == MERGE_FAILED and not error:
            error = payload.get("message") or "Render provider reported failure"

        return MergeResult(
            status=status,
            progress=progress,
            output_url=output_url,
            job_id=job_id,
            error=str(error) if error else None,
        )

    def start_merge(
        self,
        images: List[str],
        videos: Optional[List[str]],
        audio_url: str,
        output_format: str = "mp4",
    ) -> MergeResult:
        videos = videos or []
        if not audio_url or not (images or videos):
            return MergeResult(MERGE_FAILED, error="Merge needs an audio URL and at least one image or video")

        not_ready = self.ensure_ready()
        if not_ready:
            return MergeResult(MERGE_FAILED, error=not_ready, retryable=True)

        payload = {
            "imageUrl": (images or videos)[0],
            "audioUrl": audio_url,
            "images": images,
            "videos": videos,
            "audio": audio_url,
            "output_format": output_format,
        }
        logger.info(
            "Starting render merge",
            extra={"images": len(images), "videos": len(videos), "provider": self.base_url},
        )
        try:
            response = self.session.post(
                self.base_url + "/merge",
                headers=self._headers(json_body=True),
                data=json.dumps(payload),
                timeout=self.merge_timeout,
            )
        except requests.RequestException as e:
            logger.warning(f"Merge request failed: {e}")
            return MergeResult(MERGE_FAILED, error=f"Merge request failed: {e}", retryable=True)

        text = response.text or ""
        if is_html_error_page(text, response.status_code):
            logger.warning(
                "Render provider returned an HTML error page for /merge",
                extra={"status_code": response.status_code, "body_head": text[:200]},
            )
            return MergeResult(
                MERGE_FAILED,
                error=f"Render provider returned an HTML error page (HTTP {response.status_code})",
                retryable=True,
            )
        if not 200 <= response.status_code < 300:
            return MergeResult(
                MERGE_FAILED,
                error=f"Render provider rejected merge (HTTP {response.status_code}): {text[:300]}",
                retryable=response.status_code >= 500,
            )
        try:
            data = json.loads(text)
        except ValueError:
            logger.warning("Render provider returned unparseable JSON", extra={"body_head": text[:200]})
            return MergeResult(MERGE_FAILED, error=f"Unparseable merge response: {text[:200]}", retryable=True)

        result = self._parse_payload(data)
        if result.status == MERGE_COMPLETED and not result.output_url:
            result = MergeResult(MERGE_FAILED, error="Provider reported completion without an output URL")
        logger.info(
            "Render merge response",
            extra={"merge_status": result.status, "provider_job_id": result.job_id, "output_url": result.output_url},
        )
        return result

    def _status_candidates(self, job_id: str) -> List[Tuple[str, str, Optional[Dict[str, Any]]]]:
        return [
            ("GET", f"{self.base_url}/status/{job_id}", None),
            ("GET", f"{self.base_url}/merge/status/{job_id}", None),
            ("POST", f"{self.base_url}/status", {"jobId": job_id}),
        ]

    def check_status(self, job_id: str) -> MergeResult:
        """
        Ask the provider about a running merge, trying each known status route.

        A 404 means the provider no longer knows the job (it does not keep jobs
        across restarts) and is reported as a permanent failure.
        """
        errors: List[str] = []
        for method, url, body in self._status_candidates(job_id):
            try:
                if method == "GET":
                    response = self.session.get(url, headers=self._headers(), timeout=self.status_timeout)
                else:
                    response = self.session.post(
                        url, headers=self._headers(json_body=True), data=json.dumps(body), timeout=self.status_timeout
                    )
            except requests.RequestException as e:
                errors.append(f"{method} {url}: {e}")
                continue

            text = response.text or ""
            if response.status_code == 404 and not is_html_error_page(text):
                logger.warning(
                    f"Render job {job_id} not found on provider",
                    extra={"provider_job_id": job_id, "status_url": url},
                )
                return MergeResult(
                    MERGE_FAILED,
                    job_id=job_id,
                    error=f"Render job {job_id} was lost by the provider (likely restarted)",
                )
            if is_html_error_page(text, response.status_code):
                logger.warning(
                    "Render status returned an HTML error page",
                    extra={"status_code": response.status_code, "status_url": url},
                )
                errors.append(f"{method} {url}: HTML error page (HTTP {response.status_code})")
                continue
            if not 200 <= response.status_code < 300:
                errors.append(f"{method} {url}: HTTP {response.status_code}")
                continue
            try:
                data = json.loads(text)
            except ValueError:
                errors.append(f"{method} {url}: invalid JSON")
                continue

            result = self._parse_payload(data, url_means_done=True)
            result.job_id = result.job_id or job_id
            if result.status == MERGE_COMPLETED and not result.output_url:
                result.status = MERGE_PROCESSING
            return result

        return MergeResult(
            MERGE_FAILED,
            job_id=job_id,
            error="Render status unavailable: " + "; ".join(errors),
            retryable=True,
        )
