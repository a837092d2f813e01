import json
import os
from typing import Any, Dict

import structlog

logger = structlog.get_logger()


def load_secrets_from_gsm() -> Dict[str, Any]:
    """
    Load the JSON secret bundle (gateway keys, webhook secrets, DB password)
    from Google Secret Manager. Must run before Settings is built.
    """
    secret_manager_enabled = os.getenv('SECRET_MANAGER_ENABLED', 'false').lower() == 'true'
    json_secret_id = os.getenv('JSON_APP_SECRETS_GSM_ID')

    if not secret_manager_enabled or not json_secret_id:
        logger.info("Secret Manager disabled or ID not set - using environment only")
        return {}

    # Only pulled in when enabled so local runs don't need GCP credentials
    from google.cloud import secretmanager

    try:
        client = secretmanager.SecretManagerServiceClient()
        logger.info("Fetching secret bundle", secret_id=json_secret_id)

        response = client.access_secret_version(request={"name": json_secret_id})
        secrets = json.loads(response.payload.data.decode("UTF-8"))

        logger.info(f"Loaded {len(secrets)} secrets from GSM")
        return secrets
    except Exception as e:
        logger.error(f"Failed to load secrets from GSM: {e}")
        return {}


def set_env_vars_from_secrets(secrets: Dict[str, Any]) -> None:
    """
    Push secrets into the environment so pydantic-settings picks them up.
    Dict values (e.g. WEBHOOK_SECRETS) are stored as JSON.
    """
    for key, value in secrets.items():
        if value is None:
            continue
        os.environ[key] = json.dumps(value) if isinstance(value, (dict, list)) else str(value)


gsm_secrets = load_secrets_from_gsm()
set_env_vars_from_secrets(gsm_secrets)
