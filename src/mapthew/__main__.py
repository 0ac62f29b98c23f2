"""Mapthew CLI entry point."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

import httpx

from mapthew.errors import ConfigError


def _serve(args) -> None:
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    import uvicorn

    from mapthew.config import load_settings
    from mapthew.server import create_app

    try:
        settings = load_settings(args.config)
    except ConfigError as e:
        print(f"Error: invalid configuration: {e}", file=sys.stderr)
        sys.exit(1)

    app = create_app(settings)
    uvicorn.run(app, host=args.host, port=args.port, log_level=args.log_level.lower())


def _bulk_trigger(args) -> None:
    """Ask a running server to queue every open issue carrying a label."""
    url = args.url.rstrip("/") + "/api/bulk/label-trigger"
    body = {"label": args.label} if args.label else {}
    try:
        resp = httpx.post(url, json=body, timeout=60.0)
    except httpx.HTTPError as e:
        print(f"Error: could not reach {url}: {e}", file=sys.stderr)
        sys.exit(1)

    try:
        data = resp.json()
    except ValueError:
        data = {"error": resp.text}

    if resp.is_error:
        print(f"Error ({resp.status_code}): {data.get('error', data)}", file=sys.stderr)
        sys.exit(1)

    if data.get("queued"):
        print(f"Queued {data['queued']} job(s) for label \"{data['label']}\":")
        for key in data.get("issues", []):
            print(f"  {key}")
    else:
        print(data.get("message") or json.dumps(data))


def main():
    parser = argparse.ArgumentParser(
        prog="mapthew",
        description="Mapthew — Jira and GitHub triggered Claude Code sessions",
    )

    subparsers = parser.add_subparsers(dest="command")

    # mapthew serve
    serve_parser = subparsers.add_parser("serve", help="Start the webhook server and worker")
    serve_parser.add_argument(
        "--config",
        type=Path,
        default=Path("mapthew.yaml"),
        help="Path to the settings file (default: ./mapthew.yaml, optional)",
    )
    serve_parser.add_argument(
        "--host",
        default="0.0.0.0",
        help="Host to bind to (default: 0.0.0.0)",
    )
    serve_parser.add_argument(
        "--port",
        type=int,
        default=3000,
        help="Port to bind to (default: 3000)",
    )
    serve_parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )

    # mapthew bulk-trigger
    bulk_parser = subparsers.add_parser(
        "bulk-trigger", help="Queue a job for every open Jira issue with the trigger label"
    )
    bulk_parser.add_argument(
        "--url",
        default="http://localhost:3000",
        help="Base URL of a running Mapthew server (default: http://localhost:3000)",
    )
    bulk_parser.add_argument(
        "--label",
        help="Label to search for (default: the server's configured trigger label)",
    )

    args = parser.parse_args()

    if args.command == "serve":
        _serve(args)
        return

    if args.command == "bulk-trigger":
        _bulk_trigger(args)
        return

    parser.print_help()
    sys.exit(1)


if __name__ == "__main__":
    main()
