"""Configuration settings for the SQL Guard execution pipeline."""

import getpass
import re
from typing import Any, Dict, List, Optional

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict
from sqlalchemy.engine import URL

_PRIVATE_172 = re.compile(r"^172\.(1[6-9]|2[0-9]|3[0-1])\.")


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Database Configuration
    db_host: str = Field(default="localhost")
    db_port: int = Field(default=3306, ge=1, le=65535)
    db_name: Optional[str] = Field(default=None)
    db_user: Optional[str] = Field(default=None)
    db_password: Optional[SecretStr] = Field(default=None)
    db_domain: Optional[str] = Field(default=None)

    # TLS
    db_encrypt: bool = Field(default=True)
    db_trust_server_certificate: Optional[bool] = Field(default=None)
    db_ssl_ca: Optional[str] = Field(default=None)

    # Connection Pool Settings
    db_pool_min: int = Field(default=0, ge=0, le=50)
    db_pool_max: int = Field(default=10, ge=1, le=100)
    db_pool_idle_timeout_ms: int = Field(default=30000, ge=1000, le=300000)

    # Timeouts and retries
    db_connect_timeout_ms: int = Field(default=10000, gt=0)
    db_request_timeout_ms: int = Field(default=30000, gt=0)
    db_max_retries: int = Field(default=3, ge=1)
    db_retry_delay_ms: int = Field(default=1000, ge=0)

    # Safety switches (secure defaults)
    db_read_only: bool = Field(default=True)
    db_allow_destructive_operations: bool = Field(default=False)
    db_allow_schema_changes: bool = Field(default=False)

    # Performance Monitoring
    enable_performance_monitoring: bool = Field(default=True)
    max_metrics_history: int = Field(default=1000, ge=1)
    slow_query_threshold_ms: int = Field(default=5000, ge=0)
    track_pool_metrics: bool = Field(default=True)
    performance_sampling_rate: float = Field(default=1.0, ge=0.0, le=1.0)

    # Application Configuration
    app_env: str = Field(default="production")
    enable_security_audit: bool = Field(default=True)
    debug: bool = Field(default=False)
    log_level: str = Field(default="INFO")
    log_file: str = Field(default="sqlguard.log")

    # CLI Configuration
    default_output_format: str = Field(default="table")

    @property
    def password(self) -> Optional[str]:
        """Plain-text password, or None when unset."""
        if self.db_password is None:
            return None
        return self.db_password.get_secret_value() or None

    @property
    def auth_mode(self) -> str:
        """Authentication mode: 'integrated' when no credentials are configured."""
        if not self.db_user and not self.password:
            return "integrated"
        return "password"

    @property
    def integrated_principal(self) -> str:
        """Kerberos principal used for integrated authentication."""
        principal = self.db_user or getpass.getuser()
        if self.db_domain and "@" not in principal:
            principal = f"{principal}@{self.db_domain}"
        return principal

    @property
    def is_dev_environment(self) -> bool:
        """Check whether the target looks like a development setup."""
        host = self.db_host
        return (
            self.app_env.lower() in ("development", "test")
            or host in ("localhost", "127.0.0.1")
            or host.endswith(".local")
            or host.startswith("192.168.")
            or host.startswith("10.")
            or bool(_PRIVATE_172.match(host))
        )

    @property
    def trust_server_certificate(self) -> bool:
        """Explicit certificate trust, else trust only development hosts."""
        if self.db_trust_server_certificate is not None:
            return self.db_trust_server_certificate
        return self.is_dev_environment

    @property
    def database_url(self) -> URL:
        """Generate the SQLAlchemy URL for the selected authentication mode."""
        if self.auth_mode == "integrated":
            return URL.create(
                "mysql+mysqlconnector",
                username=self.integrated_principal,
                host=self.db_host,
                port=self.db_port,
                database=self.db_name,
            )
        return URL.create(
            "mysql+mysqlconnector",
            username=self.db_user,
            password=self.password,
            host=self.db_host,
            port=self.db_port,
            database=self.db_name,
        )

    def configuration_warnings(self) -> List[str]:
        """Return warnings for valid but risky combinations."""
        warnings = []
        if not self.db_read_only and self.db_allow_destructive_operations:
            warnings.append("Destructive operations are enabled - use caution in production")
        if not self.db_read_only and self.db_allow_schema_changes:
            warnings.append("Schema changes are enabled - use caution in production")
        if self.db_pool_min > self.db_pool_max:
            warnings.append(
                f"DB_POOL_MIN ({self.db_pool_min}) exceeds DB_POOL_MAX ({self.db_pool_max}); "
                f"the pool will hold at most {self.db_pool_max} connections"
            )
        if self.db_encrypt and self.trust_server_certificate and not self.is_dev_environment:
            warnings.append("Server certificate is trusted without verification on a non-development host")
        return warnings

    def connection_summary(self) -> Dict[str, Any]:
        """Connection settings with credentials redacted, for logging."""
        integrated = self.auth_mode == "integrated"
        summary = {
            "server": f"{self.db_host}:{self.db_port}",
            "database": self.db_name or "<server default>",
            "auth_type": "Integrated Authentication" if integrated else "Password Authentication",
            "user": self.integrated_principal if integrated else self.db_user,
            "password": "***********" if self.password else "<not set>",
            "encrypt": self.db_encrypt,
            "trust_server_certificate": self.trust_server_certificate,
            "pool": f"{self.db_pool_min}-{self.db_pool_max} connections",
            "read_only": self.db_read_only,
            "allow_destructive_operations": self.db_allow_destructive_operations,
            "allow_schema_changes": self.db_allow_schema_changes,
            "performance_monitoring": self.enable_performance_monitoring,
        }
        if integrated:
            summary["domain"] = self.db_domain or "<not set>"
        return summary


# Global settings instance
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get the global settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reload_settings() -> Settings:
    """Re-read the environment and replace the global settings instance."""
    global _settings
    _settings = Settings()
    return _settings
