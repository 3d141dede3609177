from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    default_language: str = "en"
    log_level: str = "INFO"

    session_ttl_seconds: int = 3600
    cache_ttl_seconds: int = 3600
    cleanup_interval_seconds: float = 3600
    max_history_messages: int = 10
    topic_history_limit: int = 5
    prompt_history_messages: int = 6

    openai_api_key: str | None = None
    llm_model: str = "gpt-4o"
    llm_temperature: float = 0.7
    llm_timeout_seconds: float = 15.0
    llm_max_retries: int = 3
    llm_initial_retry_delay_seconds: float = 1.0
    max_knowledge_chars: int = 6000

    knowledge_backend: str = "static"
    qdrant_host: str = "http://qdrant:6333"
    qdrant_api_key: str | None = None
    qdrant_collection: str = "concierge_knowledge"
    embedding_url: str = "http://bge-m3:80/embed"

    cache_backend: str = "memory"
    redis_url: str = "redis://localhost:6379/0"

    livechat_api_url: str = "https://api.livechatinc.com/v3.5"
    livechat_account_id: str | None = None
    livechat_token: str | None = None
    escalation_max_retries: int = 3
    escalation_initial_retry_delay_seconds: float = 0.5

    telemetry_webhook_url: str | None = None

    class Config:
        env_file = ".env"
        extra = "ignore"


settings = Settings()
