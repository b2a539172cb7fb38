"""
Configuration management for the SensorTag Report service.
Loads configuration from environment variables with validation and defaults.
"""

import os
from pathlib import Path
from typing import Optional, Union
from dotenv import load_dotenv
import logging


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


class Config:
    """
    Configuration manager that loads settings from environment variables.
    Provides validation and type conversion for configuration values.
    """

    def __init__(self, env_file: Optional[str] = None):
        """
        Initialize configuration manager.

        Args:
            env_file: Path to .env file (defaults to .env in project root)
        """
        self.logger = logging.getLogger(__name__)

        # Load environment variables
        if env_file is None:
            env_file = Path(__file__).parent.parent.parent / ".env"

        if Path(env_file).exists():
            load_dotenv(env_file)
            self.logger.info(f"Loaded configuration from {env_file}")
        else:
            self.logger.debug(f"Environment file {env_file} not found, using system environment")

    def get_str(self, key: str, default: Optional[str] = None) -> str:
        """Get string configuration value."""
        value = os.getenv(key) or default
        if value is None:
            raise ConfigurationError(f"{key} variable must be set")
        return value

    def get_int(self, key: str, default: Optional[int] = None) -> int:
        """Get integer configuration value."""
        value = os.getenv(key)
        if value is None:
            if default is None:
                raise ConfigurationError(f"{key} variable must be set")
            return default

        try:
            return int(value)
        except ValueError:
            raise ConfigurationError(f"Configuration key '{key}' must be an integer, got '{value}'")

    def get_float(self, key: str, default: Optional[float] = None) -> float:
        """Get float configuration value."""
        value = os.getenv(key)
        if value is None:
            if default is None:
                raise ConfigurationError(f"{key} variable must be set")
            return default

        try:
            return float(value)
        except ValueError:
            raise ConfigurationError(f"Configuration key '{key}' must be a float, got '{value}'")

    def get_bool(self, key: str, default: Optional[bool] = None) -> bool:
        """Get boolean configuration value."""
        value = os.getenv(key)
        if value is None:
            if default is None:
                raise ConfigurationError(f"{key} variable must be set")
            return default

        return value.lower() in ('true', '1', 'yes', 'on', 'enabled')

    def get_path(self, key: str, default: Optional[Union[str, Path]] = None) -> Path:
        """Get path configuration value."""
        value = os.getenv(key)
        if value is None:
            if default is None:
                raise ConfigurationError(f"{key} variable must be set")
            value = str(default)

        path = Path(value)
        if not path.is_absolute():
            # Make relative paths relative to project root
            project_root = Path(__file__).parent.parent.parent
            path = project_root / path

        return path

    # Database Configuration
    @property
    def db_name(self) -> str:
        return self.get_str("DB", "st_report")

    @property
    def db_user(self) -> str:
        return self.get_str("DB_USER")

    @property
    def db_pass(self) -> str:
        return self.get_str("DB_PASS")

    @property
    def db_host(self) -> str:
        return self.get_str("DB_HOST", "localhost")

    @property
    def db_port(self) -> int:
        return self.get_int("DB_PORT", 8086)

    @property
    def db_org(self) -> str:
        return self.get_str("DB_ORG", "-")

    @property
    def db_timeout(self) -> int:
        return self.get_int("DB_TIMEOUT", 10)

    @property
    def db_connect_tries(self) -> int:
        return self.get_int("DB_CONNECT_TRIES", 2)

    @property
    def db_connect_retry_delay(self) -> float:
        return self.get_float("DB_CONNECT_RETRY_DELAY", 2.0)

    # BLE Configuration
    @property
    def ble_adapter(self) -> str:
        return self.get_str("BLE_ADAPTER", "auto")

    @property
    def ble_discovery_pause(self) -> float:
        return self.get_float("BLE_DISCOVERY_PAUSE", 0.5)

    @property
    def ble_scan_timeout(self) -> float:
        return self.get_float("BLE_SCAN_TIMEOUT", 10.0)

    # Session setup timing (seconds)
    @property
    def connect_setup_max_dur(self) -> float:
        """Bound on the driver connect-and-set-up call.

        After many reconnections a tag may take some 10s to connect.
        """
        return self.get_float("CONNECT_SETUP_MAX_DUR", 40.0)

    @property
    def wait_after_conn_dur(self) -> float:
        return self.get_float("WAIT_AFTER_CONN_DUR", 1.5)

    @property
    def connect_config_margin(self) -> float:
        return self.get_float("CONNECT_CONFIG_MARGIN", 2.0)

    @property
    def setup_deadline(self) -> float:
        """Total time a session may spend connecting and configuring."""
        return self.connect_setup_max_dur + self.wait_after_conn_dur + self.connect_config_margin

    # Logging Configuration
    @property
    def log_level(self) -> str:
        return self.get_str("LOG_LEVEL", "INFO").upper()

    @property
    def log_dir(self) -> Path:
        return self.get_path("LOG_DIR", "./logs")

    @property
    def log_max_file_size(self) -> int:
        return self.get_int("LOG_MAX_FILE_SIZE", 10 * 1024 * 1024)  # 10MB

    @property
    def log_backup_count(self) -> int:
        return self.get_int("LOG_BACKUP_COUNT", 5)

    @property
    def log_enable_console(self) -> bool:
        return self.get_bool("LOG_ENABLE_CONSOLE", True)

    @property
    def log_enable_syslog(self) -> bool:
        return self.get_bool("LOG_ENABLE_SYSLOG", False)

    # Performance Monitoring
    @property
    def performance_log_interval(self) -> int:
        return self.get_int("PERFORMANCE_LOG_INTERVAL", 300)

    def validate_configuration(self) -> bool:
        """
        Validate all configuration values.

        Returns:
            bool: True if configuration is valid

        Raises:
            ConfigurationError: If configuration is invalid
        """
        errors = []

        # Required credentials first, in the order they are documented
        for key in ("DB_USER", "DB_PASS"):
            if not os.getenv(key):
                errors.append(f"{key} variable must be set")

        # Validate database configuration
        try:
            if not self.db_name:
                errors.append("DB cannot be empty")
            if self.db_port < 1 or self.db_port > 65535:
                errors.append("DB_PORT must be between 1 and 65535")
            if self.db_connect_tries < 1:
                errors.append("DB_CONNECT_TRIES must be at least 1")
            if self.db_connect_retry_delay < 0:
                errors.append("DB_CONNECT_RETRY_DELAY cannot be negative")
        except ConfigurationError as e:
            errors.append(str(e))

        # Validate BLE and session timing
        try:
            if self.ble_discovery_pause < 0:
                errors.append("BLE_DISCOVERY_PAUSE cannot be negative")
            if self.ble_scan_timeout <= 0:
                errors.append("BLE_SCAN_TIMEOUT must be positive")
            if self.connect_setup_max_dur <= 0:
                errors.append("CONNECT_SETUP_MAX_DUR must be positive")
            if self.wait_after_conn_dur < 0:
                errors.append("WAIT_AFTER_CONN_DUR cannot be negative")
            if self.connect_config_margin < 0:
                errors.append("CONNECT_CONFIG_MARGIN cannot be negative")
        except ConfigurationError as e:
            errors.append(str(e))

        # Validate log level
        try:
            valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
            if self.log_level not in valid_levels:
                errors.append(f"LOG_LEVEL must be one of {valid_levels}")
        except ConfigurationError as e:
            errors.append(str(e))

        if errors:
            raise ConfigurationError("Configuration validation failed:\n" + "\n".join(f"- {error}" for error in errors))

        return True

    def get_summary(self) -> dict:
        """Get configuration summary for logging/debugging."""
        return {
            'database': {
                'name': self.db_name,
                'host': self.db_host,
                'port': self.db_port,
                'org': self.db_org,
                'connect_tries': self.db_connect_tries,
                'connect_retry_delay': self.db_connect_retry_delay,
            },
            'ble': {
                'adapter': self.ble_adapter,
                'discovery_pause': self.ble_discovery_pause,
                'scan_timeout': self.ble_scan_timeout,
            },
            'session': {
                'connect_setup_max_dur': self.connect_setup_max_dur,
                'wait_after_conn_dur': self.wait_after_conn_dur,
                'setup_deadline': self.setup_deadline,
            },
            'logging': {
                'level': self.log_level,
                'dir': str(self.log_dir),
                'enable_console': self.log_enable_console,
                'enable_syslog': self.log_enable_syslog,
            },
        }
