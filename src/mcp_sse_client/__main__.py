"""The entry point for the mcp-sse-client application. It sets up the logging and runs the main function.

Two ways to run the application:
1. Run the application as a module `python -m mcp_sse_client`
2. Run the installed console script `mcp-sse-client`

"""

import argparse
import asyncio
import json
import logging
import sys
import typing as t
from functools import partial

import httpx
from mcp import types
from pydantic import ValidationError

from .client import McpClient
from .config import (
    DEFAULT_PROTOCOL_VERSION,
    ClientOptions,
    access_token_from_env,
    build_headers,
    default_sse_url,
    parse_request_timeout_s,
)
from .config_loader import RemoteServerConfig, load_named_server_configs_from_file
from .errors import McpClientError
from .httpx_client import custom_httpx_client, normalize_verify_ssl
from .sse_transport import SseTransport

logger = logging.getLogger(__name__)


def _setup_argument_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Connect to an MCP server over SSE and run a single call.",
        epilog=(
            "Examples:\n"
            "  mcp-sse-client https://mcp.semgrep.ai/sse\n"
            "  mcp-sse-client --token YOUR_TOKEN http://localhost:8080/sse --list-resources\n"
            "  mcp-sse-client http://localhost:8080/sse --call-tool echo --arguments '{\"text\": \"hi\"}'\n"
            "  mcp-sse-client --named-server-config servers.json --server fetch\n"
        ),
        formatter_class=argparse.RawTextHelpFormatter,
    )
    parser.add_argument(
        "url",
        nargs="?",
        default=default_sse_url(),
        help="URL of the server's SSE endpoint, e.g. https://host/sse. Defaults to $SSE_URL.",
    )

    connection_group = parser.add_argument_group("connection options")
    connection_group.add_argument(
        "-H",
        "--headers",
        nargs=2,
        action="append",
        metavar=("KEY", "VALUE"),
        help="Headers to pass to the SSE server. Can be used multiple times.",
        default=[],
    )
    connection_group.add_argument(
        "--token",
        default=access_token_from_env(),
        help="Bearer token sent as the Authorization header. Defaults to $API_ACCESS_TOKEN.",
    )
    connection_group.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Seconds to wait for each response. Defaults to $MCP_REQUEST_TIMEOUT_S or 60.",
    )
    connection_group.add_argument(
        "--protocol-version",
        default=None,
        help=f"Protocol version requested during initialize. Default is {DEFAULT_PROTOCOL_VERSION}",
    )
    connection_group.add_argument(
        "--verify-ssl",
        nargs="?",
        const="true",
        default=None,
        metavar="VALUE",
        help="Control SSL verification: true, false, or a path to a certificate bundle.",
    )
    connection_group.add_argument(
        "--no-verify-ssl",
        action="store_const",
        const=False,
        dest="verify_ssl",
        help="Disable SSL verification. Same as --verify-ssl false.",
    )
    connection_group.add_argument(
        "--named-server-config",
        type=str,
        default=None,
        metavar="FILE_PATH",
        help="Path to a JSON configuration file of named remote servers.",
    )
    connection_group.add_argument(
        "--server",
        default=None,
        metavar="NAME",
        help="Name of the server to use from --named-server-config.",
    )
    connection_group.add_argument(
        "--debug",
        action=argparse.BooleanOptionalAction,
        help="Enable debug mode with detailed logging output.",
        default=False,
    )

    command_group = parser.add_argument_group("commands (default: --list-tools)")
    commands = command_group.add_mutually_exclusive_group()
    commands.add_argument("--list-tools", action="store_true", help="List the server's tools.")
    commands.add_argument("--call-tool", metavar="NAME", default=None, help="Call a tool by name.")
    commands.add_argument("--list-resources", action="store_true", help="List the server's resources.")
    commands.add_argument("--read-resource", metavar="URI", default=None, help="Read a resource by URI.")
    command_group.add_argument(
        "--arguments",
        default="{}",
        metavar="JSON",
        help="JSON object of arguments for --call-tool.",
    )
    return parser


def _resolve_server(args: argparse.Namespace) -> RemoteServerConfig:
    """Build the connection settings from a config file or the command line."""
    if args.named_server_config:
        servers = load_named_server_configs_from_file(args.named_server_config)
        if args.server:
            if args.server not in servers:
                raise ValueError(f"Server '{args.server}' not found in {args.named_server_config}")
            server = servers[args.server]
        elif len(servers) == 1:
            server = next(iter(servers.values()))
        else:
            raise ValueError("--server is required when the config defines several servers")
    else:
        if not args.url or not args.url.startswith(("http://", "https://")):
            raise ValueError("An http(s) SSE URL is required")
        server = RemoteServerConfig(url=args.url, timeout=parse_request_timeout_s())

    headers = build_headers({**server.headers, **dict(args.headers)}, args.token)
    return RemoteServerConfig(
        url=server.url,
        headers=headers,
        timeout=args.timeout if args.timeout is not None else server.timeout,
        protocol_version=args.protocol_version or server.protocol_version,
    )


def format_tools(result: t.Any) -> list[str]:
    """Render a ``tools/list`` result as one line per tool."""
    try:
        listing = types.ListToolsResult.model_validate(result)
    except ValidationError:
        logger.warning("tools/list result does not match the MCP schema; printing it raw")
        return [json.dumps(result, indent=2)]
    return [f"{tool.name}\t{tool.description}" if tool.description else tool.name for tool in listing.tools]


async def run_command(client: McpClient, args: argparse.Namespace, arguments: dict[str, t.Any]) -> None:
    """Connect, run the selected call and print its result."""
    async with client:
        logger.info(
            "Connected (session: %s, protocol: %s)",
            client.session_id or "n/a",
            client.protocol_version,
        )
        if args.call_tool:
            print(json.dumps(await client.call_tool(args.call_tool, arguments), indent=2))
        elif args.list_resources:
            print(json.dumps(await client.list_resources(), indent=2))
        elif args.read_resource:
            print(json.dumps(await client.read_resource(args.read_resource), indent=2))
        else:
            tools = format_tools(await client.list_tools())
            logger.info("Tools (%d)", len(tools))
            for line in tools:
                print(line)


def main() -> None:
    """Start the client using asyncio."""
    parser = _setup_argument_parser()
    args_parsed = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args_parsed.debug else logging.INFO,
        format="[%(levelname)1.1s %(asctime)s.%(msecs).03d %(name)s] %(message)s",
    )

    try:
        arguments = json.loads(args_parsed.arguments)
    except json.JSONDecodeError as e:
        parser.error(f"--arguments is not valid JSON: {e}")
    if not isinstance(arguments, dict):
        parser.error("--arguments must be a JSON object")

    try:
        server = _resolve_server(args_parsed)
    except (FileNotFoundError, json.JSONDecodeError, ValueError) as e:
        parser.print_help()
        logger.error("Invalid connection settings: %s", e)
        sys.exit(1)

    transport = SseTransport(
        server.url,
        server.headers,
        httpx_client_factory=partial(
            custom_httpx_client,
            verify_ssl=normalize_verify_ssl(args_parsed.verify_ssl),
        ),
    )
    client = McpClient(
        server.url,
        ClientOptions(protocol_version=server.protocol_version, headers=server.headers),
        request_timeout=server.timeout,
        transport=transport,
    )

    try:
        asyncio.run(run_command(client, args_parsed, arguments))
    except (McpClientError, httpx.HTTPError) as e:
        logger.error("Failed: %s", e)
        sys.exit(1)


if __name__ == "__main__":
    main()
