import pytest
import requests

from reelpipe.exceptions import SpeechSynthesisError, StorageError, TextGenerationError
from reelpipe.inference.speech import SpeechSynthesizer, voice_id_for
from reelpipe.inference.text_generation import TextGenerator, parse_numbered_prompts
from reelpipe.config import settings
from reelpipe.services.storage import BlobStorage


class FakeResponse:
    def __init__(self, status_code=200, content=b"", headers=None, payload=None):
        self.status_code = status_code
        self.content = content
        self.text = content.decode(errors="ignore")
        self.headers = headers or {}
        self._payload = payload

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


class QueueSession:
    def __init__(self, answers):
        self.answers = list(answers)
        self.calls = []

    def _next(self, url, kwargs):
        self.calls.append((url, kwargs))
        answer = self.answers.pop(0)
        if isinstance(answer, Exception):
            raise answer
        return answer

    def post(self, url, **kwargs):
        return self._next(url, kwargs)

    def get(self, url, **kwargs):
        return self._next(url, kwargs)


def test_parse_numbered_prompts():
    text = "Here you go:\n1. A lighthouse at dusk\n2) Waves on rocks\n\n3. Gulls\n4. Extra"
    assert parse_numbered_prompts(text, 3) == ["A lighthouse at dusk", "Waves on rocks", "Gulls"]


def test_text_generator_reads_first_candidate():
    payload = {"candidates": [{"content": {"parts": [{"text": " 1. one\n2. two "}]}}]}
    generator = TextGenerator(api_key="k", session=QueueSession([FakeResponse(200, b"{}", payload=payload)]))
    assert generator.generate_image_prompts("script", 2) == ["one", "two"]


def test_text_generator_http_error():
    generator = TextGenerator(api_key="k", session=QueueSession([FakeResponse(429, b"quota")]))
    with pytest.raises(TextGenerationError):
        generator.complete("hi")


def test_speech_moves_to_next_key_on_auth_error():
    audio = FakeResponse(200, b"\xff" * 2000, {"content-type": "audio/mpeg"})
    session = QueueSession([FakeResponse(401, b"bad key"), audio])
    synthesizer = SpeechSynthesizer(api_keys=["k1", "k2"], session=session)

    assert synthesizer.synthesize("hello", "voice") == b"\xff" * 2000
    assert [kwargs["headers"]["xi-api-key"] for _, kwargs in session.calls] == ["k1", "k2"]


def test_speech_bad_request_stops_immediately():
    session = QueueSession([FakeResponse(400, b"text too long")])
    synthesizer = SpeechSynthesizer(api_keys=["k1", "k2"], session=session)

    with pytest.raises(SpeechSynthesisError):
        synthesizer.synthesize("hello", "voice")
    assert len(session.calls) == 1


def test_speech_tiny_audio_is_a_failure():
    tiny = FakeResponse(200, b"\xff" * 10, {"content-type": "audio/mpeg"})
    synthesizer = SpeechSynthesizer(api_keys=["k1"], session=QueueSession([tiny]))
    with pytest.raises(SpeechSynthesisError):
        synthesizer.synthesize("hello", "voice")


def test_voice_id_for():
    assert voice_id_for("female_arabic") == settings.ELEVENLABS_VOICE_FEMALE
    assert voice_id_for("male_arabic") == settings.ELEVENLABS_VOICE_MALE
    assert voice_id_for(None) == settings.ELEVENLABS_VOICE_MALE


class FakeS3:
    def __init__(self, fail=False):
        self.fail = fail
        self.objects = {}

    def put_object(self, Bucket, Key, Body, ContentType):
        if self.fail:
            raise RuntimeError("access denied")
        self.objects[(Bucket, Key)] = (Body, ContentType)


def test_storage_put_returns_public_url():
    s3 = FakeS3()
    storage = BlobStorage(s3=s3, session=QueueSession([]))

    url = storage.put("temp-files", "job-1/audio.mp3", b"abc", "audio/mpeg")

    assert url == "https://cdn.test/temp-files/job-1/audio.mp3"
    assert s3.objects[("temp-files", "job-1/audio.mp3")] == (b"abc", "audio/mpeg")


def test_storage_put_failure_is_wrapped():
    storage = BlobStorage(s3=FakeS3(fail=True), session=QueueSession([]))
    with pytest.raises(StorageError):
        storage.put("temp-files", "k", b"abc", "audio/mpeg")


def test_storage_get_rejects_bad_downloads():
    session = QueueSession([
        FakeResponse(404, b"missing"),
        FakeResponse(200, b""),
        requests.ConnectionError("reset"),
        FakeResponse(200, b"video"),
    ])
    storage = BlobStorage(s3=FakeS3(), session=session)

    for _ in range(3):
        with pytest.raises(StorageError):
            storage.get("https://render.test/o.mp4")
    assert storage.get("https://render.test/o.mp4") == b"video"
