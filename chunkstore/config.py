from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_name: str = "chunk-assembly-service"
    app_version: str = "dev"
    host: str = "127.0.0.1"
    port: int = 8000
    storage_root: str = "./temp"
    purge_storage_on_shutdown: bool = False
    delete_chunks_after_finalize: bool = True
    copy_buffer_bytes: int = 1024 * 1024
    log_level: str = "INFO"
    tracing_enabled: bool = False
    tracing_service_name: str = "chunk-assembly-service"
    otlp_endpoint: str = "localhost:4317"
    otlp_insecure: bool = True
    cleanup_enabled: bool = False
    cleanup_interval_seconds: int = 900
    stale_upload_ttl_seconds: int = 86400


settings = Settings()
