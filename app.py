#!/usr/bin/env python3
"""
mcpanel - Entry Point
=======================
One-command startup for the Minecraft server management console.

Usage:
    python app.py                         # Start with default settings
    python app.py --port 9000             # Start on custom port
    python app.py --project-dir /srv/mc   # Use another installation root

This script:
    1. Creates config.yaml from config.yaml.example on first run
    2. Loads environment variables from .env (SESSION_SECRET, overrides)
    3. Creates the FastAPI web application
    4. Starts the uvicorn server

After starting, open the printed URL in a browser and log in.
"""

import argparse
import logging
import os
import shutil

import uvicorn
from dotenv import load_dotenv


def main():
    """Parse arguments, load config, and start the web server."""

    # -- Parse command-line arguments ------------------------------------------
    parser = argparse.ArgumentParser(
        description="mcpanel - Minecraft server management console",
    )
    parser.add_argument(
        "--port", type=int, default=None,
        help="Port number for the web console (overrides config.yaml)",
    )
    parser.add_argument(
        "--host", type=str, default=None,
        help="Host binding address (overrides config.yaml)",
    )
    parser.add_argument(
        "--project-dir", type=str, default=None,
        help="Installation root holding config.yaml and the server directories",
    )
    parser.add_argument(
        "--log-level", type=str, default="info",
        choices=["debug", "info", "warning", "error"],
        help="Logging verbosity",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper()),
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
    )
    logger = logging.getLogger("mcpanel")

    # -- Resolve project directory ---------------------------------------------
    project_dir = os.path.abspath(args.project_dir or os.path.dirname(os.path.abspath(__file__)))

    # -- Ensure configuration file exists --------------------------------------
    config_path = os.path.join(project_dir, "config.yaml")
    config_example = os.path.join(os.path.dirname(os.path.abspath(__file__)), "config.yaml.example")
    if not os.path.exists(config_path) and os.path.exists(config_example):
        shutil.copy2(config_example, config_path)
        logger.info("Created config.yaml from template")

    # -- Load environment variables from .env ----------------------------------
    env_path = os.path.join(project_dir, ".env")
    if os.path.exists(env_path):
        load_dotenv(env_path)

    # -- Load configuration to get web server settings -------------------------
    from mcpanel.config import DEFAULTS, ConfigManager
    config = ConfigManager(project_dir).load()

    # Command-line args override config file
    host = args.host or config["web"].get("host", DEFAULTS["web"]["host"])
    port = args.port or config["web"].get("port", DEFAULTS["web"]["port"])

    # -- Print startup banner --------------------------------------------------
    print()
    print("  ╔══════════════════════════════════════════════╗")
    print("  ║           MCPANEL v1.0                       ║")
    print("  ║   Minecraft Server Management Console        ║")
    print("  ╚══════════════════════════════════════════════╝")
    print()
    print(f"  Console : http://{host}:{port}")
    print(f"  Servers : {ConfigManager(project_dir).path(config, 'servers_dir')}")
    print()

    # -- Start the web server --------------------------------------------------
    os.environ["MCPANEL_PROJECT_DIR"] = project_dir
    uvicorn.run(
        "mcpanel.main:create_app",
        factory=True,
        host=host,
        port=port,
        reload=False,
        log_level=args.log_level,
    )


if __name__ == "__main__":
    main()
