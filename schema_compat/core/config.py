import os

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Configuration class for environment variables and service settings.
    """

    # Service settings
    service_name: str = os.getenv("SERVICE_NAME", "schema_compat")
    environment: str = os.getenv("ENVIRONMENT", "development")
    debug: bool = os.getenv("DEBUG", "True").lower() == "true"

    # Logging settings
    log_level: str = os.getenv("LOG_LEVEL", "DEBUG")
    syslog_host: str = os.getenv("SYSLOG_HOST", "172.17.0.1")
    syslog_port: int = int(os.getenv("SYSLOG_PORT", "5141"))
    json_logs: bool = os.getenv("JSON_LOGS", "True").lower() == "true"
    enable_logstash: bool = os.getenv("ENABLE_LOGSTASH", "False").lower() == "true"

    # MongoDB settings
    mongodb: str = os.getenv("MONGODB", "mongodb://localhost:27017")
    mongodb_database: str = os.getenv("MONGODB_DATABASE", "tradeya")

    # MongoDB connection pool settings
    mongo_max_pool_size: int = int(os.getenv("MONGO_MAX_POOL_SIZE", "100"))
    mongo_min_pool_size: int = int(os.getenv("MONGO_MIN_POOL_SIZE", "10"))
    mongo_max_idle_time_ms: int = int(os.getenv("MONGO_MAX_IDLE_TIME_MS", "30000"))
    mongo_connect_timeout_ms: int = int(os.getenv("MONGO_CONNECT_TIMEOUT_MS", "5000"))
    mongo_server_selection_timeout_ms: int = int(
        os.getenv("MONGO_SERVER_SELECTION_TIMEOUT_MS", "5000")
    )
    mongo_socket_timeout_ms: int = int(os.getenv("MONGO_SOCKET_TIMEOUT_MS", "30000"))

    # Retry settings
    max_retries: int = int(os.getenv("MAX_RETRIES", "5"))
    retry_base_delay: float = float(os.getenv("RETRY_BASE_DELAY", "1.0"))
    retry_max_delay: float = float(os.getenv("RETRY_MAX_DELAY", "16.0"))

    # Migration settings
    migration_collection_names: str = os.getenv("MIGRATION_COLLECTIONS", "trades,conversations")
    migration_batch_size: int = int(os.getenv("MIGRATION_BATCH_SIZE", "500"))
    migration_workers: int = int(os.getenv("MIGRATION_WORKERS", "4"))
    migration_max_batch_attempts: int = int(os.getenv("MIGRATION_MAX_BATCH_ATTEMPTS", "5"))
    migration_error_sample_size: int = int(os.getenv("MIGRATION_ERROR_SAMPLE_SIZE", "50"))
    registry_refresh_seconds: int = int(os.getenv("REGISTRY_REFRESH_SECONDS", "15"))

    # Index verification settings
    verify_latency_threshold_ms: int = int(os.getenv("VERIFY_LATENCY_THRESHOLD_MS", "2000"))
    verify_probe_limit: int = int(os.getenv("VERIFY_PROBE_LIMIT", "1"))

    # Health check and rollback settings
    health_check_interval_seconds: int = int(os.getenv("HEALTH_CHECK_INTERVAL_SECONDS", "60"))
    health_sample_interval_seconds: int = int(
        os.getenv("HEALTH_SAMPLE_INTERVAL_SECONDS", "30")
    )
    health_window_seconds: int = int(os.getenv("HEALTH_WINDOW_SECONDS", "300"))
    health_error_rate_threshold: float = float(os.getenv("HEALTH_ERROR_RATE_THRESHOLD", "0.05"))
    health_inconsistency_rate_threshold: float = float(
        os.getenv("HEALTH_INCONSISTENCY_RATE_THRESHOLD", "0.02")
    )
    health_inconsistency_count_threshold: int = int(
        os.getenv("HEALTH_INCONSISTENCY_COUNT_THRESHOLD", "25")
    )
    health_min_operations: int = int(os.getenv("HEALTH_MIN_OPERATIONS", "20"))
    health_sample_size: int = int(os.getenv("HEALTH_SAMPLE_SIZE", "50"))
    health_recent_seconds: int = int(os.getenv("HEALTH_RECENT_SECONDS", "900"))

    # Cleanup settings
    cleanup_observation_hours: int = int(os.getenv("CLEANUP_OBSERVATION_HOURS", "72"))

    # Side effect settings
    side_effect_max_attempts: int = int(os.getenv("SIDE_EFFECT_MAX_ATTEMPTS", "3"))
    side_effect_redrive_seconds: int = int(os.getenv("SIDE_EFFECT_REDRIVE_SECONDS", "60"))
    side_effect_applied_history: int = int(os.getenv("SIDE_EFFECT_APPLIED_HISTORY", "100"))

    # Alerting and snapshot restore
    alert_webhook_url: str | None = os.getenv("ALERT_WEBHOOK_URL", None)
    alert_timeout_seconds: int = int(os.getenv("ALERT_TIMEOUT_SECONDS", "10"))
    snapshot_restore_command: str = os.getenv(
        "SNAPSHOT_RESTORE_COMMAND",
        "mongorestore --uri {uri} --drop --nsInclude {namespace} {location}",
    )

    # Scheduler settings
    scheduler_enabled: bool = os.getenv("SCHEDULER_ENABLED", "True").lower() == "true"
    scheduler_timezone: str = os.getenv("SCHEDULER_TIMEZONE", "UTC")

    @property
    def migration_collections(self) -> list[str]:
        """Collections covered by the migration, in processing order."""
        return [name.strip() for name in self.migration_collection_names.split(",") if name.strip()]

    @property
    def verify_environments(self) -> dict[str, str]:
        """
        Returns the MongoDB URI of every environment the index verifier checks.
        Format: VERIFY_ENVIRONMENTS=staging=mongodb://stg:27017,production=mongodb://prd:27017

        The current environment is always included.
        """
        environments = {self.environment: self.mongodb}
        raw = os.getenv("VERIFY_ENVIRONMENTS", "")
        if not raw:
            return environments
        for item in raw.split(","):
            if "=" in item:
                name, uri = item.split("=", 1)
                environments[name.strip()] = uri.strip()
        return environments

    # Environment-specific logging configuration
    @property
    def logging_config(self) -> dict:
        """
        Returns logging configuration based on environment.
        """
        base_config = {
            "app_name": self.service_name,
            "log_level": self.log_level,
            "syslog_host": self.syslog_host if self.enable_logstash else None,
            "syslog_port": self.syslog_port if self.enable_logstash else None,
            "json_logs": self.json_logs,
            "enable_logstash": self.enable_logstash,
        }

        if self.environment == "development":
            base_config.update({"json_logs": False, "log_level": "DEBUG" if self.debug else "INFO"})

        return base_config

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = Settings()
