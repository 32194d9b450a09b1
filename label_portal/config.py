from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "label-portal"
    app_env: str = "dev"
    app_url: str = "http://localhost:5173"
    host: str = "127.0.0.1"
    port: int = 3001
    database_path: str = "data/share_links.db"

    # remote storage host
    storage_protocol: str = "ftps"
    storage_host: str = "localhost"
    storage_port: int | None = None
    storage_username: str = ""
    storage_password: str = ""
    storage_timeout_seconds: float = 60.0
    sftp_keepalive_seconds: int = 10
    ftps_verify_certificate: bool = True
    connect_retries: int = 3
    connect_retry_delay_seconds: float = 2.0
    admin_root: str = "/admin-files"
    public_root: str = "/public_html/uploads"
    public_url: str = "http://localhost/uploads"
    search_max_depth: int = 32

    # catalogue source files
    artists_file: str = "src/data/artists.ts"
    releases_file: str = "src/data/releases.ts"

    # identity service
    identity_url: str = "http://localhost:54321"
    identity_anon_key: str = ""
    identity_service_key: str = ""
    identity_timeout_seconds: float = 10.0

    # upload policy
    max_demo_size_bytes: int = 250 * 1024 * 1024
    max_upload_size_bytes: int = 500 * 1024 * 1024
    max_active_submissions: int = 3
    allowed_demo_mimes: list[str] = ["audio/wav", "audio/x-wav", "audio/aiff", "audio/x-aiff"]

    share_sweep_interval_seconds: int = 3600
    log_level: str = "INFO"
    log_dir: str | None = None

    model_config = SettingsConfigDict(env_file=".env", env_prefix="LP_", extra="ignore")

    @property
    def default_storage_port(self) -> int:
        if self.storage_port:
            return self.storage_port
        return 22 if self.storage_protocol == "sftp" else 21


@lru_cache
def get_settings() -> Settings:
    return Settings()
