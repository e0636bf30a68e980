import os
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Broker Configuration
    broker: str = "beanstalk"
    beanstalk_host: str = "127.0.0.1"
    beanstalk_port: int = 11300

    # Storage Configuration (sqlite broker)
    data_dir: str = "./data"

    # Worker Configuration
    work_timeout: int = 5
    poll_interval: float = 1.0
    restart_threshold: int = 0
    process_queue: str = "process"
    serialized_queue: str = "serialized"

    # Enqueue defaults
    default_priority: int = 1024
    default_readywait: int = 0
    default_jobttr: int = 60

    # Module prefixes a SerializedMessage may name as its publisher
    publisher_modules: list[str] = ["backq"]

    # Process supervision
    process_timeout: float = 60.0
    reap_interval: float = 0.2
    shutdown_interval: float = 0.1
    shutdown_grace: float = 2.0

    # HTTP API
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    broker_timeout: float = 2.0  # seconds an API request waits on the broker

    # Logging Configuration
    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_prefix="BACKQ_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @property
    def beanstalk_address(self) -> tuple[str, int]:
        """Return (host, port) of the beanstalkd server."""
        return (self.beanstalk_host, self.beanstalk_port)

    @property
    def sqlite_path(self) -> str:
        """Return path to SQLite queue database."""
        return os.path.join(self.data_dir, "backq.db")


# Global settings instance
settings = Settings()
