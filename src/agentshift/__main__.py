"""Main entry point for agentshift - runs the API server or one-off agent checks."""

import argparse
import asyncio
import getpass
import logging
import os
import sys

from .agents.registry import AgentRegistry, build_registry
from .agents.types import AdapterNotFoundError
from .util.config_manager import ConfigManager
from .util.credentials import SecureCredentialStore

logger = logging.getLogger("agentshift")


def configure_logging(verbose: bool) -> None:
    """Root logger at DEBUG with --verbose, else AGENTSHIFT_LOG_LEVEL or INFO."""
    if verbose:
        level = logging.DEBUG
    else:
        level = getattr(logging, os.environ.get("AGENTSHIFT_LOG_LEVEL", "INFO").upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _registry() -> AgentRegistry:
    config_mgr = ConfigManager()
    return build_registry(config_manager=config_mgr, store=SecureCredentialStore(config_mgr))


def run_server(host: str = "127.0.0.1", port: int = 8765) -> None:
    """Run the agentshift API server.

    Args:
        host: Host to bind to
        port: Port to run on
    """
    import uvicorn
    from agentshift.server.main import create_app

    app = create_app()
    print(f"Starting agentshift API server on {host}:{port}")
    uvicorn.run(app, host=host, port=port)


async def list_agents(registry: AgentRegistry) -> int:
    for adapter in registry.get_all():
        await adapter.get_executable_path()
        cli = await adapter.test_cli()
        marker = "*" if adapter.id == registry.default_id else " "
        if cli.success:
            print(f"{marker} {adapter.id:<12} {adapter.name:<20} {cli.version or 'unknown version'}")
        else:
            print(f"{marker} {adapter.id:<12} {adapter.name:<20} unavailable: {cli.error}")
    return 0


def _unlock_store(config_mgr: ConfigManager) -> str:
    if config_mgr.is_first_run():
        return config_mgr.setup_main_password()
    password = os.environ.get("AGENTSHIFT_MAIN_PASSWORD")
    if password and config_mgr.check_main_password(password):
        return password
    return config_mgr.verify_main_password()


def manage_credentials(action: str, agent_id: str | None) -> int:
    """List, store or delete encrypted per-agent credentials."""
    config_mgr = ConfigManager()
    if action == "list":
        for stored in config_mgr.list_credential_agents():
            print(stored)
        return 0
    if not agent_id:
        print(f"Error: credentials {action} needs an agent id")
        return 1
    if action == "delete":
        config_mgr.delete_credential(agent_id)
        print(f"Deleted stored credential for {agent_id}")
        return 0

    password = _unlock_store(config_mgr)
    secret = getpass.getpass(f"API key or token for {agent_id}: ").strip()
    if not secret:
        print("Error: empty credential")
        return 1
    SecureCredentialStore(config_mgr, password).set(agent_id, secret)
    print(f"Stored credential for {agent_id}")
    return 0


async def usage_check(registry: AgentRegistry, agent_id: str) -> int:
    adapter = registry.require(agent_id)
    await adapter.get_executable_path()
    result = await adapter.check_usage_limits()
    if result.can_proceed:
        print(f"{adapter.name}: OK" + (f" ({result.message})" if result.message else ""))
        return 0
    resets = f", resets at {result.reset_at.isoformat()}" if result.reset_at else ""
    print(f"{adapter.name}: limit reached{resets}: {result.message}")
    return 2


async def reauth(registry: AgentRegistry, agent_id: str) -> int:
    adapter = registry.require(agent_id)
    result = await adapter.trigger_reauth(os.getcwd())
    if result.success:
        print(f"Opened a terminal to log in to {adapter.name}")
        return 0
    print(f"Error: {result.error}")
    return 1


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the agentshift CLI."""
    parser = argparse.ArgumentParser(description="agentshift: orchestrate command-line coding agents")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    parser.add_argument("--dev", action="store_true", help="Enable development mode (registers the mock agent)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    # Also accepted after the subcommand; SUPPRESS keeps the top-level value when absent
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--verbose", "-v", action="store_true", default=argparse.SUPPRESS, help="Enable debug logging")

    serve = subparsers.add_parser("serve", parents=[common], help="Run the HTTP/WebSocket API")
    serve.add_argument("--host", type=str, default="127.0.0.1", help="Host to bind to (default: 127.0.0.1)")
    serve.add_argument("--port", type=int, default=8765, help="Port to listen on (default: 8765)")

    subparsers.add_parser("agents", parents=[common], help="Show which agent CLIs are installed")

    check = subparsers.add_parser("usage-check", parents=[common], help="Run an agent's pre-flight usage probe")
    check.add_argument("agent", help="Agent id, e.g. claude-code")

    login = subparsers.add_parser("reauth", parents=[common], help="Open an agent's login flow in a terminal")
    login.add_argument("agent", help="Agent id, e.g. gemini")

    creds = subparsers.add_parser("credentials", parents=[common], help="Manage encrypted agent credentials")
    creds.add_argument("action", choices=["list", "set", "delete"])
    creds.add_argument("agent", nargs="?", help="Agent id for set and delete")

    args = parser.parse_args(argv)
    configure_logging(args.verbose)
    if args.dev:
        os.environ["AGENTSHIFT_MOCK_AGENT"] = "1"

    try:
        if args.command == "serve":
            run_server(host=args.host, port=args.port)
            return 0
        if args.command == "agents":
            return asyncio.run(list_agents(_registry()))
        if args.command == "credentials":
            return manage_credentials(args.action, args.agent)
        if args.command == "reauth":
            return asyncio.run(reauth(_registry(), args.agent))
        return asyncio.run(usage_check(_registry(), args.agent))
    except (AdapterNotFoundError, ValueError) as e:
        print(f"Error: {e}")
        return 1
    except KeyboardInterrupt:
        return 0
    except Exception as e:
        logger.exception("Unexpected error")
        print(f"\nUnexpected error: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
