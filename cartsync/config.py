"""
Configuration management for the cart synchronization service.
Loads settings from environment variables and AWS Secrets Manager.
"""
import os
import json
import logging
import boto3
from typing import Optional

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


class Config:
    """Application configuration"""

    # Application settings
    APP_PORT: int = int(os.getenv("APP_PORT", "8000"))
    PROJECT_NAME: str = os.getenv("PROJECT_NAME", "cartsync")
    REGION: str = os.getenv("REGION", "ap-southeast-1")

    # Document store settings
    DOCUMENT_STORE_BACKEND: str = os.getenv("DOCUMENT_STORE_BACKEND", "redis")
    DOCUMENT_KEY_PREFIX: str = os.getenv("DOCUMENT_KEY_PREFIX", "doc")

    # Redis settings
    REDIS_HOST: str = os.getenv("REDIS_HOST", "localhost")
    REDIS_PORT: int = int(os.getenv("REDIS_PORT", "6379"))
    REDIS_AUTH_TOKEN: Optional[str] = os.getenv("REDIS_AUTH_TOKEN")
    REDIS_DB: int = int(os.getenv("REDIS_DB", "0"))
    REDIS_USE_TLS: bool = _env_bool("REDIS_USE_TLS", "false")

    # Redis connection settings
    REDIS_SOCKET_CONNECT_TIMEOUT: int = 5
    REDIS_SOCKET_TIMEOUT: int = 5
    REDIS_RETRY_ON_TIMEOUT: bool = True
    REDIS_MAX_CONNECTIONS: int = 50
    REDIS_MAX_RETRIES: int = int(os.getenv("REDIS_MAX_RETRIES", "3"))

    # Catalog settings
    CATALOG_CACHE_TTL_SECONDS: int = int(os.getenv("CATALOG_CACHE_TTL_SECONDS", "300"))
    CATALOG_CACHE_MAX_SIZE: int = int(os.getenv("CATALOG_CACHE_MAX_SIZE", "1000"))

    # Notifications disappear after this many seconds
    NOTIFICATION_TTL_SECONDS: float = float(os.getenv("NOTIFICATION_TTL_SECONDS", "3"))

    # Payment gateway settings
    PAYMENT_API_URL: str = os.getenv("PAYMENT_API_URL", "https://api.paymongo.com")
    PAYMENT_SECRET_KEY: Optional[str] = os.getenv("PAYMENT_SECRET_KEY")
    PAYMENT_CURRENCY: str = os.getenv("PAYMENT_CURRENCY", "PHP")
    PAYMENT_TIMEOUT_SECONDS: float = float(os.getenv("PAYMENT_TIMEOUT_SECONDS", "10"))
    PUBLIC_BASE_URL: str = os.getenv("PUBLIC_BASE_URL", "http://localhost:8000")

    # Pending orders survive a process restart when a directory is configured
    PENDING_ORDER_DIR: Optional[str] = os.getenv("PENDING_ORDER_DIR")

    @classmethod
    def redis_url(cls) -> str:
        """Build the Redis connection URL"""
        scheme = "rediss" if cls.REDIS_USE_TLS else "redis"
        auth = f":{cls.REDIS_AUTH_TOKEN}@" if cls.REDIS_AUTH_TOKEN else ""
        return f"{scheme}://{auth}{cls.REDIS_HOST}:{cls.REDIS_PORT}/{cls.REDIS_DB}"

    @classmethod
    def _read_secret(cls, secret_name: str) -> dict:
        client = boto3.client("secretsmanager", region_name=cls.REGION)
        response = client.get_secret_value(SecretId=secret_name)
        return json.loads(response["SecretString"])

    @classmethod
    def load_redis_secrets(cls) -> None:
        """Load Redis authentication token from AWS Secrets Manager"""
        if cls.REDIS_AUTH_TOKEN:
            return  # Already loaded from environment

        secret_name = os.getenv("REDIS_SECRET_NAME")
        if not secret_name:
            return

        try:
            secret_data = cls._read_secret(secret_name)
            cls.REDIS_AUTH_TOKEN = secret_data.get("auth_token")
            if "endpoint" in secret_data:
                cls.REDIS_HOST = secret_data["endpoint"]
        except Exception as e:
            logger.warning(f"Could not load Redis secrets from Secrets Manager: {e}")

    @classmethod
    def load_payment_secrets(cls) -> None:
        """Load the payment gateway secret key from AWS Secrets Manager"""
        if cls.PAYMENT_SECRET_KEY:
            return

        secret_name = os.getenv("PAYMENT_SECRET_NAME")
        if not secret_name:
            return

        try:
            secret_data = cls._read_secret(secret_name)
            cls.PAYMENT_SECRET_KEY = secret_data.get("secret_key")
        except Exception as e:
            logger.warning(f"Could not load payment secrets from Secrets Manager: {e}")


# Load secrets at module import
Config.load_redis_secrets()
Config.load_payment_secrets()
