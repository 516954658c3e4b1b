"""Secrets management: resolve exchange API credentials.

Priority order:
1. Environment variables: SCALPER_API_KEY, SCALPER_API_SECRET, SCALPER_API_PASSPHRASE
2. The ``exchange.authentication`` section of the bot config
"""
import os
import re
from typing import Mapping, NamedTuple, Optional

from .errors import ConfigError

ENV_PREFIX = "SCALPER"

# ${VAR} left in place by config interpolation when VAR is unset
_PLACEHOLDER = re.compile(r"\$\{[^}]+\}")


class ExchangeCredentials(NamedTuple):
    api_key: str
    api_secret: str
    passphrase: str = ""


def load_credentials(
    authentication: Optional[Mapping[str, str]] = None,
    *,
    env_prefix: str = ENV_PREFIX,
) -> ExchangeCredentials:
    """Load exchange credentials from env or the authentication config section.

    Args:
        authentication: Mapping with ``key``, ``secret`` and optional ``passphrase``
        env_prefix: Prefix of the environment variables checked first

    Returns:
        ExchangeCredentials with api_key, api_secret, passphrase

    Raises:
        ConfigError: If the key or secret cannot be found, or is still an
            unresolved ${VAR} placeholder
    """
    authentication = {
        k: v for k, v in (authentication or {}).items() if v and not _PLACEHOLDER.search(str(v))
    }

    api_key = os.getenv(f"{env_prefix}_API_KEY") or authentication.get("key")
    api_secret = os.getenv(f"{env_prefix}_API_SECRET") or authentication.get("secret")
    passphrase = os.getenv(f"{env_prefix}_API_PASSPHRASE") or authentication.get("passphrase") or ""

    if not api_key:
        raise ConfigError(
            "Missing mandatory config key: exchange.authentication.key "
            f"(or environment variable {env_prefix}_API_KEY)"
        )
    if not api_secret:
        raise ConfigError(
            "Missing mandatory config key: exchange.authentication.secret "
            f"(or environment variable {env_prefix}_API_SECRET)"
        )

    return ExchangeCredentials(api_key=str(api_key), api_secret=str(api_secret), passphrase=str(passphrase))
