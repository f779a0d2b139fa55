"""Application configuration loaded from environment variables."""

from pathlib import Path

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Central configuration – values are read from `.env` or the environment."""

    # Vision LLM (any OpenAI-compatible endpoint)
    llm_base_url: str = "http://localhost:11434/v1"
    llm_api_key: str = "unused"
    vision_model: str = "llama3.2-vision"
    llm_temperature: float = 0.1
    llm_max_tokens: int = 1024

    # Paths
    base_dir: Path = Path(__file__).resolve().parent.parent
    inbox_dir: Path = base_dir / "data" / "inbox"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}


settings = Settings()
