#!/usr/bin/env python3
"""Startup script for the Prompt Lab MCP Server.

This script starts the MCP server using stdio transport, which is the
standard way to connect MCP servers to AI assistants.

Usage:
    python run_server.py
"""
import sys
from pathlib import Path

# Add the repository root to path so imports work without installing
repo_dir = Path(__file__).resolve().parent
if str(repo_dir) not in sys.path:
    sys.path.insert(0, str(repo_dir))

from prompt_lab.server import mcp  # pylint: disable=wrong-import-position


def main():
    """Run the MCP server via stdio."""
    mcp.run(show_banner=False, log_level="WARNING")


if __name__ == "__main__":
    main()
