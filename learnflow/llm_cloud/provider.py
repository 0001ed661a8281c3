"""
provider.py – External LLM client with provider routing and validation.
-----------------------------------------------------------------------
In the overall data-flow this file sits at the infrastructure layer. It is the
single place where we build the client that talks to the external LLM platform
(Nebius or OpenAI endpoints, both OpenAI-compatible).

Client creation is wrapped in a function instead of a module-level global so
nothing is built at import time and tests can patch `get_client()` or inject a
fake client into `AIService` directly. Provider validation happens at client
creation time for the same reason.

Provider routing logic:
- "nebius": Uses Nebius-compatible API with LLM_API_KEY/NEBIUS_API_KEY
- "openai": Uses OpenAI's official API with OPENAI_API_KEY
- Unsupported providers raise ValueError with clear error message
"""

import logging
import os
from typing import Any, Dict, List, Optional, Tuple

from openai import AsyncOpenAI

from learnflow.config import CONFIG

logger = logging.getLogger(__name__)


def require_any_env(var_names: List[str]) -> Tuple[str, str]:
    """
    Check that at least one of the specified environment variables is present and non-empty.

    Returns the first variable found so callers can log which one was used without
    exposing its value.

    Args:
        var_names (List[str]): Acceptable variable names in priority order.

    Returns:
        Tuple[str, str]: (variable name, value)

    Raises:
        RuntimeError: If none of the variables is set.
    """
    for var_name in var_names:
        value = os.getenv(var_name, "")
        if value:
            return var_name, value

    var_list = ", ".join(var_names)
    raise RuntimeError(
        f"Missing required environment variable. Set one of: {var_list}"
    )


def validate_env_for_provider(config: Dict[str, Any]) -> None:
    """
    Validate that required environment variables are present for the configured LLM provider.

    Only variable names are logged, never secret values.

    Args:
        config (Dict): The configuration dictionary with an 'llm' section.

    Raises:
        ValueError: If an unsupported provider is configured.
        RuntimeError: If the required environment variables are missing.
    """
    provider = str(config.get("llm", {}).get("provider", "nebius")).strip().lower()
    logger.info("LLM provider selected: %s", provider)

    if provider == "nebius":
        selected_var, _ = require_any_env(["LLM_API_KEY", "NEBIUS_API_KEY"])
    elif provider == "openai":
        selected_var, _ = require_any_env(["OPENAI_API_KEY"])
    else:
        raise ValueError(f"Unsupported LLM provider: {provider}")
    logger.info("Using environment variable: %s", selected_var)


def get_client(config: Optional[Dict[str, Any]] = None) -> AsyncOpenAI:
    """
    Build and return a configured OpenAI-compatible async client with provider routing.

    Returns:
        AsyncOpenAI: A ready-to-use client configured for the selected provider.

    Raises:
        RuntimeError: If required environment variables are missing.
        ValueError: If an unsupported provider is configured.
    """
    config = config or CONFIG
    validate_env_for_provider(config)

    llm_config = config.get("llm", {})
    provider = str(llm_config.get("provider", "nebius")).strip().lower()

    if provider == "nebius":
        _, api_key = require_any_env(["LLM_API_KEY", "NEBIUS_API_KEY"])
        base_url = llm_config.get("base_url", "https://api.studio.nebius.com/v1/")
    else:
        _, api_key = require_any_env(["OPENAI_API_KEY"])
        base_url = "https://api.openai.com/v1"
    logger.info("LLM provider selected: %s | base_url=%s", provider, base_url)

    # Per-call deadlines are enforced by AIService; this is only the transport ceiling.
    return AsyncOpenAI(
        base_url=base_url,
        api_key=api_key,
        timeout=llm_config.get("timeout", 30),
        max_retries=0,
    )
