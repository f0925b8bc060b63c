import json
import logging
from dataclasses import dataclass, field

from .config import DEFAULT_PROTOCOL_VERSION, DEFAULT_REQUEST_TIMEOUT_S, build_headers

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RemoteServerConfig:
    """Connection settings for one named remote MCP server."""

    url: str
    headers: dict[str, str] = field(default_factory=dict)
    timeout: float = DEFAULT_REQUEST_TIMEOUT_S
    protocol_version: str = DEFAULT_PROTOCOL_VERSION


def load_named_server_configs_from_file(config_file_path: str) -> dict[str, RemoteServerConfig]:
    """Loads named remote server configurations from a JSON file.

    The file has the shape ``{"mcpServers": {"name": {"url": ..., ...}}}``.
    Optional per-server keys are ``headers``, ``token``, ``timeout``,
    ``protocolVersion`` and ``enabled``.

    Args:
        config_file_path: Path to the JSON configuration file.

    Returns:
        A dictionary of named server configurations.

    Raises:
        FileNotFoundError: If the config file is not found.
        json.JSONDecodeError: If the config file contains invalid JSON.
        ValueError: If the config file format is invalid.
    """
    named_servers: dict[str, RemoteServerConfig] = {}
    logger.info("Loading named server configurations from: %s", config_file_path)

    try:
        with open(config_file_path) as f:
            config_data = json.load(f)
    except FileNotFoundError:
        logger.error("Configuration file not found: %s", config_file_path)
        raise
    except json.JSONDecodeError:
        logger.error("Error decoding JSON from configuration file: %s", config_file_path)
        raise
    except OSError as e:
        logger.error("Unexpected error opening or reading configuration file %s: %s", config_file_path, e)
        raise ValueError(f"Could not read configuration file: {e}") from e

    if not isinstance(config_data, dict) or "mcpServers" not in config_data:
        msg = f"Invalid config file format in {config_file_path}. Missing 'mcpServers' key."
        logger.error(msg)
        raise ValueError(msg)

    for name, server_config in config_data.get("mcpServers", {}).items():
        if not isinstance(server_config, dict):
            logger.warning(
                "Skipping invalid server config for '%s' in %s. Entry is not a dictionary.",
                name,
                config_file_path,
            )
            continue
        if not server_config.get("enabled", True):
            logger.info("Named server '%s' from config is not enabled. Skipping.", name)
            continue

        url = server_config.get("url")
        if not isinstance(url, str) or not url.startswith(("http://", "https://")):
            logger.warning("Named server '%s' from config is missing an http(s) 'url'. Skipping.", name)
            continue

        headers = server_config.get("headers", {})
        if not isinstance(headers, dict):
            logger.warning("Named server '%s' from config has invalid 'headers' (must be an object). Skipping.", name)
            continue

        timeout = server_config.get("timeout", DEFAULT_REQUEST_TIMEOUT_S)
        if isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0:
            logger.warning("Named server '%s' from config has invalid 'timeout'. Skipping.", name)
            continue

        token = server_config.get("token")
        named_servers[name] = RemoteServerConfig(
            url=url,
            headers=build_headers(
                {str(k): str(v) for k, v in headers.items()},
                str(token) if token is not None else None,
            ),
            timeout=float(timeout),
            protocol_version=str(server_config.get("protocolVersion", DEFAULT_PROTOCOL_VERSION)),
        )
        logger.info("Configured named server '%s' from config: %s", name, url)

    return named_servers
