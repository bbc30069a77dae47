"""
Configuration for the ServicePower Cloud Functions.

Every request parameter is resolved in a fixed order:

    request body -> query string -> environment -> config store -> built-in default

The config store is a JSON document of the form ``{"servicepower": {...}}``
kept in Cloud Storage (``SP_CONFIG_BUCKET`` / ``SP_CONFIG_BLOB``) or, for local
runs, in a file named by ``SP_CONFIG_FILE``. Credentials have no built-in
default; a deployment must provide them through the environment or the store,
or callers must send them with the request.
"""

import json
import os
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Tuple

from google.cloud import storage

from servicepower_common import ConfigError, FunctionResponse, json_response, mask_password

DEFAULT_CONFIG_BLOB = "servicepower/config.json"

# config field -> environment variable
ENV_VARS = {
    "user_id": "SP_USER_ID",
    "password": "SP_PASSWORD",
    "svcr_acct": "SP_SVCRACCT",
    "mfg_id": "SP_MFG_ID",
    "soap_environment": "SP_SOAP_ENVIRONMENT",
    "claims_environment": "SP_CLAIMS_ENVIRONMENT",
    "claims_region": "SP_CLAIMS_REGION",
    "lookback_days": "SP_LOOKBACK_DAYS",
    "timeout": "SP_HTTP_TIMEOUT",
    "app_env": "APP_ENV",
}

# config field -> key under "servicepower" in the config store
STORE_KEYS = {
    "user_id": "userid",
    "password": "password",
    "svcr_acct": "svcracct",
    "mfg_id": "mfgid",
    "soap_environment": "soap_environment",
    "claims_environment": "claims_environment",
    "claims_region": "claims_region",
    "lookback_days": "lookback_days",
    "timeout": "timeout",
}

DEFAULTS = {
    "soap_environment": "staging",
    "claims_environment": "development",
    "claims_region": "northAmerica",
    "lookback_days": 10,
    "app_env": "production",
}


def resolve_param(name: str, *sources: Optional[Mapping[str, Any]], default: Any = None) -> Any:
    """Return the first non-empty value for ``name`` across ordered sources.

    Args:
        name: Key to look up in every source
        *sources: Mappings in order of precedence (None entries are skipped)
        default: Value returned when no source has a non-empty value

    Returns:
        Resolved value
    """
    for source in sources:
        if not source:
            continue
        value = source.get(name)
        if value is not None and value != "":
            return value
    return default


def is_debug(app_env: Optional[str] = None) -> bool:
    """True for development deployments (APP_ENV=development or local)."""
    if app_env is None:
        app_env = os.environ.get(ENV_VARS["app_env"], DEFAULTS["app_env"])
    return app_env.lower() in ("development", "local")


def missing_credentials_response(missing: List[str], **extra: Any) -> FunctionResponse:
    """400 returned when no source provides the required credentials."""
    return json_response({
        "status": "error",
        **extra,
        "error": "Missing credentials",
        "missing": missing,
        "message": (
            "Send userId and password with the request, or set "
            "SP_USER_ID and SP_PASSWORD for the deployment."
        ),
    }, 400)


def load_config_store(environ: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    """Load the ``servicepower`` section of the deployment config store.

    Args:
        environ: Environment mapping (defaults to os.environ)

    Returns:
        Store values, or an empty dict when no store is configured or present

    Raises:
        ConfigError: If the store exists but cannot be read or parsed
    """
    environ = os.environ if environ is None else environ

    config_file = environ.get("SP_CONFIG_FILE")
    bucket_name = environ.get("SP_CONFIG_BUCKET")

    try:
        if config_file:
            if not os.path.exists(config_file):
                return {}
            with open(config_file, "r", encoding="utf-8") as f:
                document = json.load(f)
        elif bucket_name:
            blob_name = environ.get("SP_CONFIG_BLOB", DEFAULT_CONFIG_BLOB)
            bucket = storage.Client().bucket(bucket_name)
            blob = bucket.blob(blob_name)
            if not blob.exists():
                return {}
            document = json.loads(blob.download_as_text())
        else:
            return {}
    except (OSError, ValueError) as e:
        raise ConfigError(f"Could not read ServicePower config store: {e}") from e

    section = document.get("servicepower", {}) if isinstance(document, dict) else None
    if not isinstance(section, dict):
        raise ConfigError("ServicePower config store must contain a 'servicepower' object")
    return section


@dataclass
class Credentials:
    """ServicePower credentials for a single request."""

    user_id: str
    password: str
    svcr_acct: Optional[str] = None

    def masked_soap_fields(self) -> Dict[str, Any]:
        return {
            "UserID": self.user_id,
            "Password": mask_password(self.password),
            "SvcrAcct": self.svcr_acct,
        }

    def masked_rest_fields(self) -> Dict[str, Any]:
        return {
            "userId": self.user_id,
            "password": mask_password(self.password),
        }


@dataclass
class ServicePowerConfig:
    """Deployment-level settings, injected into every handler."""

    user_id: Optional[str] = None
    password: Optional[str] = None
    svcr_acct: Optional[str] = None
    mfg_id: Optional[str] = None
    soap_environment: str = DEFAULTS["soap_environment"]
    claims_environment: str = DEFAULTS["claims_environment"]
    claims_region: str = DEFAULTS["claims_region"]
    lookback_days: int = DEFAULTS["lookback_days"]
    timeout: Optional[float] = None
    app_env: str = DEFAULTS["app_env"]

    @property
    def debug(self) -> bool:
        """Development deployments attach tracebacks to 500 responses."""
        return is_debug(self.app_env)

    def as_params(self) -> Dict[str, Any]:
        """Expose the settings under the request parameter names callers use."""
        return {
            "userId": self.user_id,
            "password": self.password,
            "svcrAcct": self.svcr_acct,
            "mfgId": self.mfg_id,
        }

    def resolve_credentials(
        self,
        body: Mapping[str, Any],
        query: Mapping[str, Any],
    ) -> Tuple[Optional[Credentials], List[str]]:
        """Resolve credentials for a request.

        Args:
            body: Parsed JSON body
            query: Query string parameters

        Returns:
            (credentials, missing) where credentials is None if any required
            field could not be resolved and missing names those fields
        """
        defaults = self.as_params()
        user_id = resolve_param("userId", body, query, defaults)
        password = resolve_param("password", body, query, defaults)

        missing = [
            name for name, value in (("userId", user_id), ("password", password))
            if not value
        ]
        if missing:
            return None, missing

        svcr_acct = resolve_param("svcrAcct", body, query, defaults, default=user_id)
        return Credentials(user_id=str(user_id), password=str(password), svcr_acct=str(svcr_acct)), []


def load_config(
    environ: Optional[Mapping[str, str]] = None,
    store: Optional[Mapping[str, Any]] = None,
) -> ServicePowerConfig:
    """Build the config from the environment and the config store.

    Args:
        environ: Environment mapping (defaults to os.environ)
        store: Config store section (loaded with load_config_store when None)

    Returns:
        ServicePowerConfig

    Raises:
        ConfigError: If the store cannot be read or a numeric setting is invalid
    """
    environ = os.environ if environ is None else environ
    if store is None:
        store = load_config_store(environ)

    env_values = {field: environ.get(var) for field, var in ENV_VARS.items()}
    store_values = {field: store.get(key) for field, key in STORE_KEYS.items()}

    values = {
        field: resolve_param(field, env_values, store_values, default=DEFAULTS.get(field))
        for field in ENV_VARS
    }

    try:
        values["lookback_days"] = int(values["lookback_days"])
        if values["timeout"] is not None:
            values["timeout"] = float(values["timeout"])
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid numeric ServicePower setting: {e}") from e

    return ServicePowerConfig(**values)
