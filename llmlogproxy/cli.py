"""CLI entry point for the llmlogproxy server."""

import argparse
import errno
import socket

import uvicorn

from .config import load_config
from .server import create_app


def port_is_free(host: str, port: int) -> bool:
    """Return True when ``port`` can be bound on ``host``."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        try:
            sock.bind((host, port))
        except OSError as exc:
            if exc.errno == errno.EADDRINUSE:
                return False
            raise
    return True


def find_available_port(host: str, port: int, retries: int) -> int:
    """Return the first free port in ``port .. port + retries``.

    Raises:
        RuntimeError: If every candidate port is busy.
    """
    for candidate in range(port, port + retries + 1):
        if port_is_free(host, candidate):
            return candidate
        print(f"[server] Port {candidate} in use.")
    raise RuntimeError(f"No free port in range {port}-{port + retries}")


def main():
    """Main entry point for llmlogproxy CLI."""
    parser = argparse.ArgumentParser(
        description="llmlogproxy - logging proxy for generative-AI HTTP APIs"
    )
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to YAML configuration file (default: config.yaml if present)",
    )
    parser.add_argument(
        "--env-file",
        type=str,
        default=None,
        help="Path to environment file (default: auto-load .env if available)",
    )
    parser.add_argument(
        "--host",
        type=str,
        default=None,
        help="Host to bind to (overrides config)",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=None,
        help="Port to bind to (overrides config)",
    )
    parser.add_argument(
        "--no-auto-port",
        action="store_true",
        help="Fail instead of trying the next port when the port is busy",
    )

    args = parser.parse_args()

    config = load_config(args.config, env_file=args.env_file)

    host = args.host or config.serve.host
    requested_port = args.port or config.serve.port
    port = requested_port
    if config.serve.auto_port and not args.no_auto_port:
        port = find_available_port(host, requested_port, config.serve.port_retries)

    print(f"LLM logging proxy listening on http://{host}:{port}")
    if port != requested_port:
        print(f"[port] {requested_port} was busy, auto-switched to {port}")
    print(f"Upstream base: {config.upstream_base_url}")
    print(f"Logging to: {config.log.log_file}")
    print("\nEndpoints:")
    print(f"  - Proxy: POST http://{host}:{port}{config.route_prefix}/<upstream path>")
    print(f"  - Dashboard: http://{host}:{port}/logs")
    print(f"  - Log data: http://{host}:{port}/logs/data")
    print(f"  - Health: http://{host}:{port}/health")

    app = create_app(args.config, env_file=args.env_file, preloaded_config=config)
    uvicorn.run(app, host=host, port=port)
