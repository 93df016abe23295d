"""Configuration module for the SSH key manager."""

import os
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


class Config:
    """Configuration class for the SSH key manager."""

    # Database configuration
    DB_URL = os.getenv("DB_URL", "sqlite:///keymanager.db")

    # Logging configuration
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
    LOG_FILE = os.getenv("LOG_FILE", "keymanager.log")

    # Signing identity used to log into every managed host
    SIGNING_KEY_FILE = os.getenv("SIGNING_KEY_FILE", "keymanager_id")
    SIGNING_KEY_PASSPHRASE = os.getenv("SIGNING_KEY_PASSPHRASE") or None

    # Timeouts (seconds)
    CONNECTION_TIMEOUT = int(os.getenv("CONNECTION_TIMEOUT", "10"))
    AUTH_TIMEOUT = int(os.getenv("AUTH_TIMEOUT", "30"))
    COMMAND_TIMEOUT = int(os.getenv("COMMAND_TIMEOUT", "30"))

    # Host key trust-on-first-use
    TRUST_TIMEOUT = int(os.getenv("TRUST_TIMEOUT", "15"))
    TRUST_TTL = int(os.getenv("TRUST_TTL", "600"))

    # Jump host routing
    MAX_JUMP_DEPTH = int(os.getenv("MAX_JUMP_DEPTH", "8"))

    # Remote file locations
    AUTHORIZED_KEYS_FILE = os.getenv("AUTHORIZED_KEYS_FILE", ".ssh/authorized_keys")
    SERVER_KEY_GLOB = os.getenv("SERVER_KEY_GLOB", "/etc/ssh/ssh_host_*_key.pub")

    @classmethod
    def validate(cls):
        """Validate the configuration."""
        for name in ("CONNECTION_TIMEOUT", "AUTH_TIMEOUT", "COMMAND_TIMEOUT",
                     "TRUST_TIMEOUT", "TRUST_TTL"):
            if getattr(cls, name) < 1:
                raise ValueError(f"Invalid {name.lower().replace('_', ' ')}")

        if cls.MAX_JUMP_DEPTH < 1:
            raise ValueError("Invalid max jump depth")

        if not cls.AUTHORIZED_KEYS_FILE:
            raise ValueError("Authorized keys file must be set")

        if not cls.DB_URL.startswith("sqlite"):
            raise ValueError("Only sqlite:/// database URLs are supported")
