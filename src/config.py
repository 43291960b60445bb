from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    database_url: str
    supabase_url: str
    supabase_service_role_key: str
    jwt_secret: str
    jwt_algorithm: str = "HS256"
    jwt_expiration_minutes: int = 60
    instagram_app_secret: str | None = None
    instagram_webhook_verify_token: str | None = None
    app_base_url: str = "http://localhost:8000"
    webhook_signed_request_tolerance_seconds: int = 300
    webhook_max_processing_attempts: int = 3
    webhook_retry_batch_limit: int = 100
    webhook_persistence_timeout_seconds: float = 5.0
    webhook_dispatch_timeout_seconds: float = 30.0
    webhook_dispatch_max_workers: int = 4
    observability_export_url: str | None = None
    observability_export_bearer_token: str | None = None
    observability_export_timeout_seconds: float = 3.0
    metrics_admin_user_ids: str = ""

    @property
    def metrics_admin_ids(self) -> set[str]:
        return {item.strip() for item in self.metrics_admin_user_ids.split(",") if item.strip()}

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
    )


settings = Settings()
