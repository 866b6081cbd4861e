import argparse
import os
import sys
from typing import List, Optional

from .config import BYTES_PER_MB, load_secret_key, load_settings
from .errors import FileServerError
from .logs import configure_logging
from .service import FileServer


def _create_user(args: argparse.Namespace) -> int:
    settings = load_settings()
    configure_logging(settings.logs_dir, settings.log_level)
    server = FileServer(settings)
    quota_bytes = None if args.quota_mb is None else int(args.quota_mb * BYTES_PER_MB)
    try:
        user = server.create_user(args.username, admin=args.admin, quota_bytes=quota_bytes)
    except FileServerError as error:
        print(f"error: {error}", file=sys.stderr)
        return 1

    from .app import issue_token

    secret_key = settings.secret_key or load_secret_key(settings.data_dir)
    print(f"user_id={user.id}")
    print(f"token={issue_token(secret_key, user)}")
    return 0


def _serve(args: argparse.Namespace) -> int:
    from .app import create_app

    app = create_app()
    app.run(host=args.host, port=args.port, debug=False)
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(prog="fileserver")
    commands = parser.add_subparsers(dest="command", required=True)

    create = commands.add_parser("create-user", help="create an account and print its API token")
    create.add_argument("username")
    create.add_argument("--admin", action="store_true")
    create.add_argument("--quota-mb", type=float, default=None)
    create.set_defaults(handler=_create_user)

    serve = commands.add_parser("serve", help="run the HTTP API")
    serve.add_argument("--host", default="0.0.0.0")
    serve.add_argument("--port", type=int, default=int(os.environ.get("PORT", "8000")))
    serve.set_defaults(handler=_serve)

    args = parser.parse_args(argv)
    return args.handler(args)


if __name__ == "__main__":
    sys.exit(main())
