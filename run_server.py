#!/usr/bin/env python3
"""Startup script for the Stability AI MCP Server.

This script starts the MCP server using stdio transport, which is the
standard way to connect MCP servers to AI assistants like Claude Desktop
or other MCP-compatible clients. Pass ``--sse`` to serve over HTTP instead.

Usage:
    python run_server.py
    python run_server.py --sse
"""
import sys
from pathlib import Path

# Add the project directory to path so imports work correctly
project_dir = Path(__file__).resolve().parent
if str(project_dir) not in sys.path:
    sys.path.insert(0, str(project_dir))

from stability_mcp.main import main

if __name__ == "__main__":
    sys.exit(main())
