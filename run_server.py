#!/usr/bin/env python3
"""Startup script for the OpenAI Image MCP Server.

This script starts the MCP server using stdio transport, which is the
standard way to connect MCP servers to AI assistants.

Usage:
    python run_server.py

Logging goes to stderr; set HEAVY_DEBUG=1 for request/response debug logs,
or OPENAI_IMAGE_LOG_LEVEL to pick a level explicitly.
"""
import logging
import os
import sys
from pathlib import Path

# Add the project directory to path so imports work without installation
project_dir = Path(__file__).resolve().parent
if str(project_dir) not in sys.path:
    sys.path.insert(0, str(project_dir))

from openai_image_adapter.server import mcp  # pylint: disable=wrong-import-position


def main():
    """Run the MCP server via stdio."""
    level = "DEBUG" if os.getenv("HEAVY_DEBUG") else os.getenv("OPENAI_IMAGE_LOG_LEVEL", "WARNING").upper()
    logging.basicConfig(
        level=level,
        stream=sys.stderr,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    mcp.run(show_banner=False, log_level=level)


if __name__ == "__main__":
    main()
