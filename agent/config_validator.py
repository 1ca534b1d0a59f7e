"""Configuration validation utilities.

Checks the settings the gateway cannot start without before any connection
is attempted.
"""

from typing import Any, Dict, List, Tuple
import logging

logger = logging.getLogger(__name__)


class ConfigValidationError(Exception):
    """Raised when configuration is invalid."""
    pass


def validate_required_settings(config) -> List[Tuple[str, bool, str]]:
    """Check required credentials on a GatewayConfig.

    Returns:
        List of (setting_name, is_set, message) tuples
    """
    from gateway.config import Platform

    results = []

    discord = config.platforms.get(Platform.DISCORD)
    if discord and discord.enabled and discord.token:
        results.append(("DISCORD_TOKEN", True, "Discord configured"))
    else:
        results.append(("DISCORD_TOKEN", False, "Missing discord token"))

    if config.completion.api_key:
        results.append(("COMPLETION_API_KEY", True,
                        f"Completions via {config.completion.base_url}"))
    else:
        results.append(("COMPLETION_API_KEY", False,
                        "Missing completion API key (set COMPLETION_API_KEY or OPENAI_API_KEY)"))

    if config.admin_users:
        results.append(("DOROTHY_ADMIN_USERS", True,
                        f"{len(config.admin_users)} command user(s)"))
    else:
        results.append(("DOROTHY_ADMIN_USERS", False, "Not set (commands disabled)"))

    return results


def validate_model_config(model: str) -> Tuple[bool, str]:
    """Validate that a model string is usable.

    Returns:
        (is_valid, message) tuple
    """
    if not model or not model.strip():
        return (False, "No model specified")
    return (True, f"Model: {model}")


REQUIRED_SETTINGS = ("DISCORD_TOKEN", "COMPLETION_API_KEY")


def run_validation(config) -> Dict[str, Any]:
    """Run all validation checks.

    Returns:
        Dictionary with validation results
    """
    results = {
        "settings": validate_required_settings(config),
        "model": validate_model_config(config.completion.model),
        "errors": [],
        "warnings": [],
    }

    for name, is_set, message in results["settings"]:
        if is_set:
            continue
        if name in REQUIRED_SETTINGS:
            results["errors"].append(message)
        else:
            results["warnings"].append(message)

    model_valid, model_msg = results["model"]
    if not model_valid:
        results["errors"].append(model_msg)

    results["is_valid"] = len(results["errors"]) == 0
    return results


def ensure_valid(config) -> None:
    """Raise ConfigValidationError if the gateway cannot start."""
    results = run_validation(config)
    for warning in results["warnings"]:
        logger.warning(warning)
    if not results["is_valid"]:
        raise ConfigValidationError("; ".join(results["errors"]))


if __name__ == "__main__":
    # Allow running as standalone script
    import json
    from gateway.config import load_env_files, load_gateway_config
    load_env_files()
    print(json.dumps(run_validation(load_gateway_config()), indent=2))
