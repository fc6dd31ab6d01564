import os
from dataclasses import dataclass
from functools import lru_cache


@dataclass(frozen=True)
class Settings:
    """Runtime configuration, read from the environment once"""
    database_url: str = "sqlite:///./quota_gate.db"
    redis_url: str = "redis://localhost:6379"
    jobs_topic: str = "media_jobs"
    worker_shared_secret: str = ""
    worker_url: str = "http://127.0.0.1:8081/worker/process"
    callback_base_url: str = "http://127.0.0.1:8000/api"
    jwt_secret: str = "your-secret-key"  # Change in production!
    jwt_algorithm: str = "HS256"
    b2_key_id: str = ""
    b2_key: str = ""
    b2_output_bucket: str = "media-output"
    job_timeout_seconds: int = 3600
    download_url_ttl: int = 3600

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=os.getenv("DATABASE_URL", cls.database_url),
            redis_url=os.getenv("REDIS_URL", cls.redis_url),
            jobs_topic=os.getenv("JOBS_TOPIC", cls.jobs_topic),
            worker_shared_secret=os.getenv("WORKER_SHARED_SECRET", cls.worker_shared_secret),
            worker_url=os.getenv("WORKER_URL", cls.worker_url),
            callback_base_url=os.getenv("CALLBACK_BASE_URL", cls.callback_base_url).rstrip("/"),
            jwt_secret=os.getenv("JWT_SECRET", cls.jwt_secret),
            jwt_algorithm=os.getenv("JWT_ALGORITHM", cls.jwt_algorithm),
            b2_key_id=os.getenv("B2_KEY_ID", cls.b2_key_id),
            b2_key=os.getenv("B2_KEY", cls.b2_key),
            b2_output_bucket=os.getenv("B2_OUTPUT_BUCKET", cls.b2_output_bucket),
            job_timeout_seconds=int(os.getenv("JOB_TIMEOUT_SECONDS", str(cls.job_timeout_seconds))),
            download_url_ttl=int(os.getenv("DOWNLOAD_URL_TTL", str(cls.download_url_ttl))),
        )


@lru_cache()
def get_settings() -> Settings:
    """Get the process-wide settings"""
    return Settings.from_env()
