import asyncio

import httpx
import pytest

from reelpipe.exceptions import ImageGenerationFailed
from reelpipe.inference.image_generation import ImageGenerationClient, build_image_url

PNG = b"\x89PNG" + b"\x00" * 8000


def make_client(handler, ladder=(1.0, 1.0, 1.0), templates=None):
    seeds = iter(range(1, 100))
    return ImageGenerationClient(
        templates=templates or ["https://img.test/a/{prompt}?seed={seed}", "https://img.test/b/{prompt}?seed={seed}"],
        timeout_ladder=ladder,
        min_bytes=4096,
        transport=httpx.MockTransport(handler),
        seed_factory=lambda: next(seeds),
    )


def test_build_image_url_quotes_prompt():
    url = build_image_url("https://img.test/{prompt}?seed={seed}", " a cat / on a mat ", 7)
    assert url == "https://img.test/a%20cat%20%2F%20on%20a%20mat?seed=7"


@pytest.mark.asyncio
async def test_small_body_is_retried_with_next_template_and_seed():
    seen = []

    def handler(request):
        seen.append(str(request.url))
        if len(seen) == 1:
            return httpx.Response(200, content=b"tiny", headers={"content-type": "image/jpeg"})
        return httpx.Response(200, content=PNG, headers={"content-type": "image/png"})

    body = await make_client(handler).generate("sunset")

    assert body == PNG
    assert seen[0].startswith("https://img.test/a/sunset?seed=1")
    assert seen[1].startswith("https://img.test/b/sunset?seed=2")


@pytest.mark.asyncio
async def test_non_image_response_counts_as_failure():
    calls = []

    def handler(request):
        calls.append(request)
        if len(calls) < 3:
            return httpx.Response(200, content=b"<html>" + b"x" * 5000, headers={"content-type": "text/html"})
        return httpx.Response(200, content=PNG, headers={"content-type": "application/octet-stream"})

    assert await make_client(handler).generate("forest") == PNG
    assert len(calls) == 3


@pytest.mark.asyncio
async def test_exhausted_ladder_raises_with_every_attempt():
    def handler(request):
        return httpx.Response(500, content=b"overloaded")

    with pytest.raises(ImageGenerationFailed) as info:
        await make_client(handler).generate("mountain")

    assert len(info.value.errors) == 3
    assert "HTTP 500" in info.value.errors[0]


@pytest.mark.asyncio
async def test_slow_attempt_times_out_and_next_rung_is_tried():
    calls = []

    async def handler(request):
        calls.append(request)
        if len(calls) == 1:
            await asyncio.sleep(1)
        return httpx.Response(200, content=PNG, headers={"content-type": "image/png"})

    body = await make_client(handler, ladder=(0.05, 1.0)).generate("river")

    assert body == PNG
    assert len(calls) == 2
