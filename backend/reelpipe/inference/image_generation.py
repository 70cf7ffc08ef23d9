"""
Best-effort image generation against free, unauthenticated upstreams.

Attempts climb a ladder of growing timeouts: early attempts give up fast on a
request that is probably dead, the last one waits long enough to succeed under
load. Each attempt uses a fresh random seed so a cached failure is never served
twice, and rotates through the configured provider templates.
"""
from __future__ import annotations

import asyncio
import random
from typing import List, Optional, Sequence
from urllib.parse import quote

import httpx

from ..config import settings
from ..exceptions import ImageGenerationFailed
from ..logger import logger


def build_image_url(template: str, prompt: str, seed: int) -> str:
    return template.format(prompt=quote(prompt.strip(), safe=""), seed=seed)


class ImageGenerationClient:
    def __init__(
        self,
        templates: Optional[Sequence[str]] = None,
        timeout_ladder: Optional[Sequence[float]] = None,
        min_bytes: Optional[int] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        seed_factory=None,
    ):
        self.templates = list(templates or settings.IMAGE_PROVIDER_TEMPLATES)
        self.timeout_ladder = tuple(timeout_ladder or settings.IMAGE_TIMEOUT_LADDER)
        self.min_bytes = settings.IMAGE_MIN_BYTES if min_bytes is None else min_bytes
        self.transport = transport
        self.seed_factory = seed_factory or (lambda: random.randint(1, 2**31 - 1))
        if not self.templates:
            raise ValueError("At least one image provider template is required")

    async def _attempt(self, client: httpx.AsyncClient, url: str, timeout: float) -> bytes:
        # httpx timeouts are per phase; wait_for bounds the whole attempt.
        response = await asyncio.wait_for(client.get(url, timeout=timeout), timeout=timeout)
        if response.status_code != 200:
            raise RuntimeError(f"HTTP {response.status_code}")
        content_type = response.headers.get("content-type", "")
        if content_type and not content_type.startswith("image/") and "octet-stream" not in content_type:
            raise RuntimeError(f"unexpected content type {content_type}")
        body = response.content
        if len(body) < self.min_bytes:
            raise RuntimeError(f"image too small ({len(body)} bytes)")
        return body

    async def generate(self, prompt: str) -> bytes:
        """
        Return image bytes for `prompt` or raise `ImageGenerationFailed` once every
        rung of the timeout ladder has been tried.
        """
        errors: List[str] = []
        async with httpx.AsyncClient(transport=self.transport, follow_redirects=True) as client:
            for attempt, timeout in enumerate(self.timeout_ladder):
                template = self.templates[attempt % len(self.templates)]
                seed = self.seed_factory()
                url = build_image_url(template, prompt, seed)
                try:
                    body = await self._attempt(client, url, timeout)
                    logger.info(
                        "Image generated",
                        extra={"attempt": attempt + 1, "timeout": timeout, "bytes": len(body)},
                    )
                    return body
                except asyncio.TimeoutError:
                    errors.append(f"attempt {attempt + 1}: timed out after {timeout:.0f}s")
                except (httpx.HTTPError, RuntimeError) as e:
                    errors.append(f"attempt {attempt + 1}: {e}")
                logger.warning(
                    f"Image attempt {attempt + 1}/{len(self.timeout_ladder)} failed: {errors[-1]}",
                    extra={"attempt": attempt + 1, "timeout": timeout, "prompt_head": prompt[:60]},
                )

        raise ImageGenerationFailed(prompt, errors)
