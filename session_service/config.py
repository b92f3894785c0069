"""Configuration module for the stateless session service."""

import logging
import os

from aws_lambda_powertools.logging import Logger
from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    raw_value = os.getenv(name)
    if raw_value is None or not raw_value.strip():
        return default
    return raw_value.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    raw_value = os.getenv(name)
    if raw_value is None or not raw_value.strip():
        return default
    return int(raw_value)


def _env_list(name: str) -> list[str]:
    raw_value = os.getenv(name) or ""
    return [item.strip() for item in raw_value.split(",") if item.strip()]


# Comma-separated; the first secret encrypts, all of them may decrypt.
AUTH_SECRETS = _env_list("AUTH_SECRET")

SESSION_COOKIE_NAME = os.getenv("SESSION_COOKIE_NAME", "authjs.session-token")
SESSION_COOKIE_SECURE = _env_bool("SESSION_COOKIE_SECURE", True)
SESSION_MAX_AGE_SECONDS = _env_int("SESSION_MAX_AGE_SECONDS", 90 * 24 * 60 * 60)
PROVIDER_ID_TOKEN_WINDOW_SECONDS = _env_int("PROVIDER_ID_TOKEN_WINDOW_SECONDS", 15 * 60)

AZURE_AD_B2C_TENANT_ID = os.getenv("AZURE_AD_B2C_TENANT_ID")
AZURE_AD_B2C_USER_FLOW = os.getenv("AZURE_AD_B2C_USER_FLOW")
AZURE_AD_B2C_CLIENT_ID = os.getenv("AZURE_AD_B2C_CLIENT_ID")
AZURE_AD_B2C_CLIENT_SECRET = os.getenv("AZURE_AD_B2C_CLIENT_SECRET")
PROVIDER_TOKEN_ENDPOINT = os.getenv("PROVIDER_TOKEN_ENDPOINT")
PROVIDER_SCOPE = os.getenv("PROVIDER_SCOPE", "openid offline_access profile email")
PROVIDER_REFRESH_TIMEOUT_SECONDS = _env_int("PROVIDER_REFRESH_TIMEOUT_SECONDS", 10)

logger: Logger = Logger(service=os.getenv("POWERTOOLS_SERVICE_NAME", "session-service"))

for name in ["urllib3", "requests"]:
    logging.getLogger(name).setLevel(logging.CRITICAL)
