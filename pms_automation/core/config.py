from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    app_env: str = "dev"
    log_level: str = "INFO"
    database_url: str = "sqlite+aiosqlite:///./pms_automation.db"

    openai_model: str = "gpt-4.1-mini"

    # sub-agent execution
    agent_timeout_s: float = 120.0
    max_parallel_agents: int = 4

    # listings
    jobs_per_page: int = 10
    max_jobs_per_page: int = 100

    max_upload_bytes: int = 5 * 1024 * 1024

    class Config:
        env_file = ".env"
        extra = "ignore"

settings = Settings()
