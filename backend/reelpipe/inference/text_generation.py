import re
from typing import List, Optional

import requests

from ..config import settings
from ..exceptions import TextGenerationError
from ..logger import logger

GEMINI_URL = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"

_NUMBERED_LINE = re.compile(r"^\s*\d+\s*[\.\)]\s*(.+)$")


def parse_numbered_prompts(text: str, count: int) -> List[str]:
    """Pick "1. ..." / "2) ..." lines out of a model answer."""
    prompts = []
    for line in (text or "").splitlines():
        match = _NUMBERED_LINE.match(line)
        if match and match.group(1).strip():
            prompts.append(match.group(1).strip())
    return prompts[:count]


class TextGenerator:
    def __init__(self, api_key: Optional[str] = None, model: Optional[str] = None, session: Optional[requests.Session] = None):
        self.api_key = api_key if api_key is not None else settings.GEMINI_API_KEY
        self.model = model or settings.GEMINI_MODEL
        self.session = session or requests.Session()

    def complete(self, prompt: str) -> str:
        try:
            response = self.session.post(
                GEMINI_URL.format(model=self.model),
                params={"key": self.api_key},
                json={
                    "contents": [{"parts": [{"text": prompt}]}],
                    "generationConfig": {"temperature": 0.7, "maxOutputTokens": 2048},
                },
                timeout=settings.GEMINI_TIMEOUT,
            )
        except requests.RequestException as e:
            raise TextGenerationError(f"Text generation request failed: {e}")

        if response.status_code != 200:
            raise TextGenerationError(f"Text generation error (HTTP {response.status_code}): {response.text[:300]}")

        try:
            data = response.json()
            text = data["candidates"][0]["content"]["parts"][0]["text"]
        except (ValueError, KeyError, IndexError, TypeError):
            raise TextGenerationError("Text generation returned no candidates")
        return (text or "").strip()

    def generate_voiceover_script(self, title: str, description: str, duration: int) -> str:
        prompt = (
            "You are a professional copywriter. Write a voiceover script in Arabic for a short video.\n\n"
            f"Title: {title}\n"
            f"Description: {description}\n"
            f"Target length: about {duration} seconds\n\n"
            "Rules:\n"
            "- engaging, simple and clear language\n"
            "- suitable for reading aloud\n"
            "- output only the script, no comments or explanations\n\n"
            "Script:"
        )
        script = self.complete(prompt)
        if not script:
            raise TextGenerationError("Text generation returned an empty script")
        logger.info("Voiceover script generated", extra={"chars": len(script)})
        return script

    def generate_image_prompts(self, script: str, count: int) -> List[str]:
        prompt = (
            f"You are a visual content creator. Based on the following voiceover script, create {count} "
            "detailed image prompts in English for AI image generation.\n\n"
            f"Script:\n{script}\n\n"
            "Instructions:\n"
            f"- Create exactly {count} image prompts\n"
            "- Each prompt should be detailed and descriptive, cinematic style\n"
            f"- Output ONLY the prompts, one per line, numbered 1-{count}\n\n"
            "Prompts:"
        )
        prompts = parse_numbered_prompts(self.complete(prompt), count)
        logger.info("Image prompts generated", extra={"requested": count, "received": len(prompts)})
        return prompts
