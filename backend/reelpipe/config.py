from typing import List, Tuple
from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    DATABASE_URL: str = "postgresql+psycopg://user:password@db/dbname"

    AWS_ENDPOINT_URL: str
    AWS_ACCESS_KEY_ID: str
    AWS_SECRET_ACCESS_KEY: str
    AWS_REGION_NAME: str = "ru-1"
    STORAGE_PUBLIC_BASE_URL: str
    STORAGE_TEMP_BUCKET: str = "temp-files"
    STORAGE_OUTPUT_BUCKET: str = "media-output"
    STORAGE_DOWNLOAD_TIMEOUT: float = 120.0

    CELERY_BROKER_URL: str = "redis://redis:6379/0"
    CELERY_RESULT_BACKEND: str = "redis://redis:6379/0"

    RENDER_BASE_URL: str = "https://ff.hf.space"
    RENDER_API_TOKEN: str = ""
    RENDER_HEALTH_TIMEOUT: float = 10.0
    RENDER_MERGE_TIMEOUT: float = 60.0
    RENDER_STATUS_TIMEOUT: float = 15.0
    RENDER_WAKE_DELAYS: Tuple[float, ...] = (10.0, 20.0, 30.0)
    RENDER_WAKE_SETTLE_SECONDS: float = 8.0

    IMAGE_PROVIDER_TEMPLATES: List[str] = [
        "https://image.pollinations.ai/prompt/{prompt}?width=1280&height=720&seed={seed}&nologo=true",
        "https://image.pollinations.ai/prompt/{prompt}?width=1280&height=720&seed={seed}&nologo=true&model=turbo",
    ]
    IMAGE_TIMEOUT_LADDER: Tuple[float, ...] = (25.0, 35.0, 50.0, 70.0, 90.0)
    IMAGE_MIN_BYTES: int = 4096
    IMAGE_BATCH_SIZE: int = 5
    MAX_SCENE_COUNT: int = 20

    GEMINI_API_KEY: str = ""
    GEMINI_MODEL: str = "gemini-2.5-flash"
    GEMINI_TIMEOUT: float = 60.0

    ELEVENLABS_API_KEYS: List[str] = []
    ELEVENLABS_MODEL_ID: str = "eleven_multilingual_v2"
    ELEVENLABS_VOICE_MALE: str = "onwK4e9ZLuTAKqWW03F9"
    ELEVENLABS_VOICE_FEMALE: str = "EXAVITQu4vr4xnSDxMaL"
    ELEVENLABS_TIMEOUT: float = 90.0

    STUCK_THRESHOLD_SECONDS: int = 180
    MAX_CONSECUTIVE_POLL_FAILURES: int = 20

    RATE_LIMIT_WINDOW_SECONDS: int = 300
    RATE_LIMIT_MAX_REQUESTS: int = 10

    class Config:
        env_file = ".env"

settings = Settings()
