import os
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Database configuration
    # Use env-provided DATABASE_URL. No hardcoded credentials.
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///./evaluation.db")

    # Redis configuration (final leaderboard cache)
    REDIS_URL: str = os.getenv("REDIS_URL", "redis://redis:6379/0")

    # Celery configuration
    CELERY_BROKER_URL: str = os.getenv("CELERY_BROKER_URL", "redis://redis:6379/1")
    CELERY_RESULT_BACKEND: str = os.getenv("CELERY_RESULT_BACKEND", "redis://redis:6379/1")

    # Scoring backends (OpenRouter-compatible chat completions)
    SCORING_API_URL: str = os.getenv("SCORING_API_URL", "https://openrouter.ai/api/v1/chat/completions")
    SCORING_API_KEY: str = os.getenv("SCORING_API_KEY", "")
    # Comma separated model ids; one backend per model
    SCORING_MODELS: str = os.getenv(
        "SCORING_MODELS",
        "meta-llama/llama-3-8b-instruct,openai/gpt-3.5-turbo,anthropic/claude-3-haiku",
    )
    SCORING_MAX_TOKENS: int = int(os.getenv("SCORING_MAX_TOKENS", "300"))
    SCORING_TEMPERATURE: float = float(os.getenv("SCORING_TEMPERATURE", "0.0"))
    SCORING_REQUEST_TIMEOUT_SECONDS: float = float(os.getenv("SCORING_REQUEST_TIMEOUT_SECONDS", "60"))
    SCORING_RETRY_ATTEMPTS: int = int(os.getenv("SCORING_RETRY_ATTEMPTS", "2"))
    SCORING_RETRY_DELAY_MS: int = int(os.getenv("SCORING_RETRY_DELAY_MS", "500"))
    SCORING_HTTP_REFERER: str = os.getenv("SCORING_HTTP_REFERER", "")
    SCORING_X_TITLE: str = os.getenv("SCORING_X_TITLE", "Prompt Engineering Competition")

    # Global evaluation lease
    LEASE_KEY: str = os.getenv("LEASE_KEY", "global")
    LEASE_STALE_AFTER_SECONDS: int = int(os.getenv("LEASE_STALE_AFTER_SECONDS", "3600"))

    # Progress polling (reader side)
    PROGRESS_POLL_INTERVAL_SECONDS: float = float(os.getenv("PROGRESS_POLL_INTERVAL_SECONDS", "5"))
    PROGRESS_DEBOUNCE_MS: int = int(os.getenv("PROGRESS_DEBOUNCE_MS", "500"))

    # Final leaderboard cache
    LEADERBOARD_CACHE_TTL_SECONDS: int = int(os.getenv("LEADERBOARD_CACHE_TTL_SECONDS", str(24 * 60 * 60)))

    # Bearer JWT settings for role-gated routes
    AUTH_JWT_SECRET: str = os.getenv("AUTH_JWT_SECRET", "change-me")
    AUTH_JWT_ISSUER: str = os.getenv("AUTH_JWT_ISSUER", "competition-platform")
    AUTH_JWT_AUDIENCE: str = os.getenv("AUTH_JWT_AUDIENCE", "admin-api")
    # Comma separated roles allowed to start bulk runs
    EVALUATION_ROLES: str = os.getenv("EVALUATION_ROLES", "admin,superadmin")
    # Comma separated roles allowed to generate final leaderboards
    LEADERBOARD_ROLES: str = os.getenv("LEADERBOARD_ROLES", "superadmin")

    class Config:
        # Let BaseSettings read from project .env if present (local dev).
        env_file = ".env"

    @property
    def scoring_models(self) -> list[str]:
        return [m.strip() for m in self.SCORING_MODELS.split(",") if m.strip()]

    @property
    def evaluation_roles(self) -> set[str]:
        return {r.strip() for r in self.EVALUATION_ROLES.split(",") if r.strip()}

    @property
    def leaderboard_roles(self) -> set[str]:
        return {r.strip() for r in self.LEADERBOARD_ROLES.split(",") if r.strip()}


settings = Settings()
