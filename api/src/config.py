from functools import lru_cache

from engine.src.config import Settings as EngineSettings

class Settings(EngineSettings):
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    class Config:
        env_file = ".env"

@lru_cache()
def get_settings() -> Settings:
    return Settings()
