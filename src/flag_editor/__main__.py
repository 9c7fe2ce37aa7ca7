from __future__ import annotations

import argparse
import logging
import os

from .app import DEFAULT_DB_PATH, create_app
from .projects import check_project_file


def _serve(args: argparse.Namespace) -> int:
    app = create_app(args.db)
    app.run(host=args.host, port=args.port, debug=False)
    return 0


def _check(args: argparse.Namespace) -> int:
    failures = 0
    for report in check_project_file(args.file):
        if report["error"]:
            failures += 1
            print(f"{report['key']}: ERROR {report['error']}")
            continue
        default = report["default"] or "-"
        print(f"{report['key']}: {report['type']} {report['state']} default={default} targeting={report['targeting']}")
    return 1 if failures else 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Edit and serve flagd flag definition files")
    subcommands = parser.add_subparsers(dest="command", required=True)

    serve = subcommands.add_parser("serve", help="run the flag file HTTP API")
    serve.add_argument("--host", default="0.0.0.0")
    serve.add_argument("--port", type=int, default=3000)
    serve.add_argument("--db", default=os.environ.get("FLAG_EDITOR_DB_PATH", DEFAULT_DB_PATH))
    serve.set_defaults(handler=_serve)

    check = subcommands.add_parser("check", help="validate every flag of a flag file")
    check.add_argument("file")
    check.set_defaults(handler=_check)

    args = parser.parse_args(argv)
    logging.basicConfig(level=os.environ.get("APP_LOG_LEVEL", "INFO").upper())
    return args.handler(args)


if __name__ == "__main__":
    raise SystemExit(main())
