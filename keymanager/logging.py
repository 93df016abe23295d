"""Logging configuration for the SSH key manager."""

import logging
import logging.handlers
import sys
from typing import Optional

from .config import Config


class KeyManagerLogger:
    """Custom logger for the SSH key manager."""

    def __init__(self, name: str = "keymanager", log_file: Optional[str] = None):
        """Initialize the key manager logger."""
        self.logger = logging.getLogger(name)
        self.log_file = log_file or Config.LOG_FILE
        self.log_level = getattr(logging, Config.LOG_LEVEL.upper(), logging.INFO)

        self._setup_logger()

    def _setup_logger(self):
        """Setup logger with console and file handlers."""
        # Clear existing handlers
        self.logger.handlers.clear()

        self.logger.setLevel(self.log_level)

        formatter = logging.Formatter(
            fmt='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(self.log_level)
        console_handler.setFormatter(formatter)
        self.logger.addHandler(console_handler)

        # File handler with rotation
        try:
            file_handler = logging.handlers.RotatingFileHandler(
                self.log_file,
                maxBytes=10 * 1024 * 1024,  # 10MB
                backupCount=5
            )
            file_handler.setLevel(self.log_level)
            file_handler.setFormatter(formatter)
            self.logger.addHandler(file_handler)
        except OSError as e:
            self.logger.warning(f"Could not setup file logging: {e}")

        # paramiko is chatty at INFO
        logging.getLogger("paramiko").setLevel(max(self.log_level, logging.WARNING))

    def get_logger(self) -> logging.Logger:
        """Get the configured logger."""
        return self.logger


def setup_logging() -> logging.Logger:
    """Setup logging for the key manager application."""
    return KeyManagerLogger().get_logger()


def _short(fingerprint: str) -> str:
    return f"{fingerprint[:16]}..." if fingerprint and len(fingerprint) > 16 else fingerprint


def log_connection_attempt(logger: logging.Logger, host: str, address: str,
                           via: Optional[str] = None):
    """Log a connection attempt."""
    route = f" via {via}" if via else ""
    logger.info(f"Connection attempt - Host: {host}, Address: {address}{route}")


def log_connection_success(logger: logging.Logger, host: str, fingerprint: str):
    """Log a verified and authenticated connection."""
    logger.info(
        f"Connection SUCCESS - Host: {host}, "
        f"Fingerprint: {_short(fingerprint)}"
    )


def log_connection_denied(logger: logging.Logger, host: str,
                          fingerprint: str, reason: str):
    """Log a connection refused because of the host key."""
    logger.warning(
        f"Connection DENIED - Host: {host}, "
        f"Fingerprint: {_short(fingerprint)}, Reason: {reason}"
    )


def log_connection_error(logger: logging.Logger, host: str, error: str):
    """Log a connection error."""
    logger.error(f"Connection ERROR - Host: {host}, Error: {error}")


def log_connection_closed(logger: logging.Logger, host: str):
    """Log a session closure."""
    logger.debug(f"Connection CLOSED - Host: {host}")


def log_trust_offered(logger: logging.Logger, name: str, address: str,
                      fingerprint: str):
    """Log a host key captured for confirmation."""
    logger.info(
        f"Trust OFFERED - Host: {name}, Address: {address}, "
        f"Fingerprint: {fingerprint}"
    )


def log_trust_rejected(logger: logging.Logger, name: str, reason: str):
    """Log a confirmation that did not lead to a new host."""
    logger.warning(f"Trust REJECTED - Host: {name}, Reason: {reason}")


def log_key_removed(logger: logging.Logger, host: str, key_base64: str):
    """Log a key removal from a host."""
    logger.info(f"Key REMOVED - Host: {host}, Key: {_short(key_base64)}")


def log_key_added(logger: logging.Logger, host: str, key_base64: str):
    """Log a key granted on a host."""
    logger.info(f"Key ADDED - Host: {host}, Key: {_short(key_base64)}")
