from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Temporal
    TEMPORAL_TARGET: str = "localhost:7233"
    TEMPORAL_NAMESPACE: str = "default"
    TEMPORAL_TASK_QUEUE: str = "marketops-tasks"
    HEARTBEAT_SCHEDULE_ID: str = "marketops-heartbeat"

    # Record store: "memory" or "supabase"
    MARKETOPS_STORE: str = "memory"
    SUPABASE_URL: str = ""
    SUPABASE_SERVICE_ROLE_KEY: str = ""
    SUPABASE_SCHEMA: str = "public"

    # Drafting: "template" or "openai"
    MARKETOPS_DRAFTER: str = "template"
    OPENAI_API_KEY: str = ""
    OPENAI_MODEL: str = "gpt-4o-mini"

    # Workflow timing
    APPROVAL_TIMEOUT_HOURS: int = 72
    METRICS_DELAY_SECONDS: int = 3600
    HEARTBEAT_INTERVAL_SECONDS: int = 60
    HEARTBEAT_BATCH_LIMIT: int = 10

    BUDGET_WARNING_RATIO: float = 0.8

    PORT: int = 8000


settings = Settings()
