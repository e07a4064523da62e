#!/usr/bin/env python3
"""
Startup wrapper for AutoCV API with IPv4/IPv6 auto-detection.

Binds dual-stack (::) when the host supports it so browsers reaching the
API over either family share one listener, else IPv4-only (0.0.0.0).

Supports environment variables:
- BIND_ADDRESS: Explicit bind address (default: auto-detect)
- PORT: HTTP port (default: 3001)
"""

import asyncio
import os
import socket
import subprocess
import sys

import uvicorn

APP = "autocv_api.main:app"


def can_bind_ipv6_dualstack(port: int) -> bool:
    """Test if we can bind to IPv6 with dual-stack support on the given port.

    Returns True only if both IPv6 and IPv4 will work via the :: binding.
    """
    try:
        sock = socket.socket(socket.AF_INET6, socket.SOCK_STREAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)

        # IPV6_V6ONLY=0 makes :: accept IPv4 connections too
        try:
            sock.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_V6ONLY, 0)
        except (AttributeError, OSError):
            sock.close()
            return False

        sock.bind(("::", port))
        sock.close()
        return True
    except OSError:
        return False


async def serve_dualstack(port: int) -> None:
    """Serve the app on a pre-bound dual-stack socket."""
    sock = socket.socket(socket.AF_INET6, socket.SOCK_STREAM)
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    sock.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_V6ONLY, 0)
    sock.bind(("::", port))
    sock.listen(128)
    sock.setblocking(False)

    server = uvicorn.Server(uvicorn.Config(APP, log_level="info"))
    await server.serve(sockets=[sock])


def main() -> None:
    """Start uvicorn with auto-detected or explicit bind address."""
    port = int(os.getenv("PORT", "3001"))
    bind_address = os.getenv("BIND_ADDRESS", "auto")

    if bind_address == "auto":
        if can_bind_ipv6_dualstack(port):
            host = "::"
            print(f"Auto-detected dual-stack support, binding to [::]:{port}", file=sys.stderr)
        else:
            host = "0.0.0.0"
            print(f"IPv6 not available, binding to 0.0.0.0:{port}", file=sys.stderr)
    else:
        host = bind_address
        print(f"Using explicit bind address: {host}:{port}", file=sys.stderr)

    if host == "::":
        print(f"Starting uvicorn with dual-stack socket [::]:{port}", file=sys.stderr)
        asyncio.run(serve_dualstack(port))
    else:
        cmd = ["uvicorn", APP, "--host", host, "--port", str(port)]
        print(f"Starting: {' '.join(cmd)}", file=sys.stderr)
        sys.exit(subprocess.call(cmd))


if __name__ == "__main__":
    main()
