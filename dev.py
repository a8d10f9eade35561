"""
Worker dev proxy
----------------
Uploads a built worker script to the preview service and serves it on
localhost, so it can be exercised with a browser, curl, or any HTTP tool.

Usage: python dev.py <script.js> [--host example.com] [--ip 127.0.0.1] [--port 8787]
"""

import argparse
import asyncio
import os
import sys
from typing import Optional

from dev_errors import DevProxyError
from dev_server import serve
from preview_identity import get_preview_id, new_session_id
from preview_upload import GlobalUser, Target, upload
from server_config import ServerConfig


def dev(
    target: Target,
    user: Optional[GlobalUser],
    host: Optional[str] = None,
    port: Optional[str] = None,
    ip: Optional[str] = None,
    upstream_timeout: Optional[float] = None,
    live_log: bool = True,
    uploader=upload,
):
    server_config = ServerConfig.new(host, ip, port, upstream_timeout)
    session_id = new_session_id()
    preview_id = get_preview_id(target, user, server_config, session_id, uploader=uploader)

    asyncio.run(serve(server_config, preview_id, session_id if live_log else None))


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Serve a worker preview on localhost")
    parser.add_argument("script", help="Path to the built worker script")
    parser.add_argument("--name", default=None, help="Worker name (default: script file name)")
    parser.add_argument("--host", default=None, help="Host the worker sees requests for (default: https://example.com)")
    parser.add_argument("--ip", default=None, help="Local address to listen on (default: 127.0.0.1)")
    parser.add_argument("--port", default=None, help="Local port to listen on (default: 8787)")
    parser.add_argument(
        "--upstream-timeout",
        type=float,
        default=None,
        help="Seconds to wait on the preview host before failing a request (default: no limit)",
    )
    parser.add_argument("--no-live-log", action="store_true", help="Don't stream the worker's console output")
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    name = args.name or os.path.splitext(os.path.basename(args.script))[0]
    target = Target(name=name, script_path=args.script, account_id=os.environ.get("CF_ACCOUNT_ID"))

    try:
        dev(
            target,
            GlobalUser.from_env(),
            host=args.host,
            port=args.port,
            ip=args.ip,
            upstream_timeout=args.upstream_timeout,
            live_log=not args.no_live_log,
        )
    except DevProxyError as e:
        print(f"❌ {e}", file=sys.stderr)
        sys.exit(1)
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
