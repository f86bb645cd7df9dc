"""
MCP Server for CalDAV and CardDAV
=================================

This module is the command-line entry point of a Model Context Protocol
(MCP) server that exposes calendars (CalDAV) and contacts (CardDAV) as tools.
The same tool registry is served over one of two transports:

* **stdio** (default) - for local clients such as Claude Desktop, Cursor or
  VS Code.  One long-lived session per process.
* **Streamable HTTP, stateless** (``--http``) - for remote clients such as
  n8n or cloud deployments.  Each request is served by a fresh server
  instance, so the process scales horizontally.

Usage::

    dav-mcp                          # stdio
    dav-mcp --http                   # HTTP on port 3000
    dav-mcp --http --port=8080 --host=0.0.0.0

**Configuration** is read from the environment (and a ``.env`` file next to
this module); see :mod:`settings` for the full list.  The essentials:

* ``AUTH_METHOD`` - ``Basic`` (default) or ``OAuth``.
* Basic: ``CALDAV_SERVER_URL``, ``CALDAV_USERNAME``, ``CALDAV_PASSWORD``,
  optional ``CARDDAV_SERVER_URL``.
* OAuth (e.g. Google Calendar): ``GOOGLE_USER``, ``GOOGLE_CLIENT_ID``,
  ``GOOGLE_CLIENT_SECRET``, ``GOOGLE_REFRESH_TOKEN``.
* ``BEARER_TOKEN`` - shared secret required by ``POST /mcp`` in HTTP mode.

**Security considerations**

The DAV credentials grant full read/write access to the account's calendars
and contacts.  In HTTP mode always set a long random ``BEARER_TOKEN`` and put
the server behind an HTTPS reverse proxy.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from typing import List, Optional

from errors import DavMcpError
from http_server import serve_http
from settings import configure_logging, load_settings
from stdio_server import StdioBinding

log = logging.getLogger("dav-mcp")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="dav-mcp", description="CalDAV/CardDAV MCP server")
    parser.add_argument("--http", action="store_true", help="serve stateless Streamable HTTP instead of stdio")
    parser.add_argument("--port", help="HTTP listen port (overrides PORT)")
    parser.add_argument("--host", help="HTTP listen host (overrides HOST)")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)

    # Overrides land in the environment before anything else reads it.
    if args.http:
        if args.port:
            os.environ["PORT"] = args.port
        if args.host:
            os.environ["HOST"] = args.host

    try:
        settings = load_settings()
    except DavMcpError as exc:
        configure_logging()
        log.error("Invalid configuration: %s", exc)
        return 1
    configure_logging(settings.log_level)

    if not args.http:
        return StdioBinding(settings).run()

    try:
        asyncio.run(serve_http(settings))
    except DavMcpError as exc:
        log.error("Failed to start server: %s", exc)
        return 1
    except KeyboardInterrupt:
        log.info("Interrupted, shutting down")
    return 0


if __name__ == '__main__':
    sys.exit(main())
