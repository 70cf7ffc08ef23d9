from typing import List, Optional

import requests

from ..config import settings
from ..exceptions import SpeechSynthesisError
from ..logger import logger

TTS_URL = "https://api.elevenlabs.io/v1/text-to-speech/{voice_id}"
MIN_AUDIO_BYTES = 1000


def voice_id_for(voice_type: Optional[str]) -> str:
    if voice_type == "female_arabic":
        return settings.ELEVENLABS_VOICE_FEMALE
    return settings.ELEVENLABS_VOICE_MALE


class SpeechSynthesizer:
    """
    Text-to-speech over a pool of API keys.

    A 400 means the request itself is bad, so no other key is tried. Auth errors,
    rate limits and server errors move on to the next key.
    """

    def __init__(self, api_keys: Optional[List[str]] = None, session: Optional[requests.Session] = None):
        self.api_keys = list(api_keys if api_keys is not None else settings.ELEVENLABS_API_KEYS)
        self.session = session or requests.Session()

    def synthesize(self, text: str, voice_id: str) -> bytes:
        if not self.api_keys:
            raise SpeechSynthesisError("No speech synthesis API keys configured")

        errors = []
        for index, api_key in enumerate(self.api_keys):
            label = f"key#{index + 1}"
            try:
                response = self.session.post(
                    TTS_URL.format(voice_id=voice_id),
                    params={"output_format": "mp3_44100_128"},
                    headers={"xi-api-key": api_key, "Accept": "audio/mpeg"},
                    json={
                        "text": text,
                        "model_id": settings.ELEVENLABS_MODEL_ID,
                        "voice_settings": {"stability": 0.5, "similarity_boost": 0.75, "use_speaker_boost": True},
                    },
                    timeout=settings.ELEVENLABS_TIMEOUT,
                )
            except requests.RequestException as e:
                errors.append(f"{label}: {e}")
                continue

            if response.status_code == 200:
                content_type = response.headers.get("content-type", "")
                if "audio" not in content_type and "octet" not in content_type:
                    errors.append(f"{label}: non-audio response ({content_type or 'no content type'})")
                    continue
                if len(response.content) < MIN_AUDIO_BYTES:
                    errors.append(f"{label}: empty audio ({len(response.content)}B)")
                    continue
                logger.info("Speech synthesized", extra={"key": label, "bytes": len(response.content)})
                return response.content

            body = response.text[:200]
            if response.status_code == 400:
                raise SpeechSynthesisError(f"Speech synthesis rejected the request (400): {body}")
            logger.warning(
                f"Speech synthesis {label} failed with HTTP {response.status_code}",
                extra={"key": label, "status_code": response.status_code, "body_head": body},
            )
            errors.append(f"{label}: HTTP {response.status_code}")

        raise SpeechSynthesisError(f"All {len(self.api_keys)} speech synthesis keys failed: " + "; ".join(errors))
