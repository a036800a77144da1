#!/usr/bin/env python3
"""
deployd CLI.

Usage:
    deployd serve [--host HOST] [--port PORT]
    deployd sign PAYLOAD_FILE [--secret SECRET]
    deployd deploy OWNER REPO COMMIT --url URL [--branch BRANCH]

`serve` runs the webhook daemon. `sign` prints the X-Hub-Signature-256
value for a payload, for poking the endpoint by hand. `deploy` runs one
build through the full pipeline in the foreground, which is how a failed
build is retried without pushing again.

Output of sign/deploy: JSON, one line. {"ok": true, ...} or {"ok": false, "error": "..."}
Configuration: ADM_* environment variables, see deployd.config.
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path

from deployd.config import get_settings
from deployd.errors import DeployError
from deployd.lock_manager import LockManager
from deployd.log import setup_logging
from deployd.models import Task
from deployd.notifier import notifier_from_settings
from deployd.runner import runner_from_settings
from deployd.signature import sign


def reply(data):
    print(json.dumps(data))


def cmd_serve(settings, args):
    import uvicorn

    uvicorn.run(
        "deployd.api:app",
        host=args.host or settings.host,
        port=args.port or settings.port,
        log_level=settings.log_level.lower(),
    )
    return 0


def cmd_sign(settings, args):
    secret = args.secret
    if secret is None and settings.webhook_secret is not None:
        secret = settings.webhook_secret.get_secret_value()
    payload = Path(args.payload).read_bytes()
    reply({"ok": True, "signature": sign(secret, payload)})
    return 0


async def _deploy(settings, task: Task):
    notifier = notifier_from_settings(settings)
    try:
        runner = runner_from_settings(
            settings, LockManager(settings.lock_timeout), notifier)
        outcome = await runner.process(task)
        await runner.flush()
        return outcome
    finally:
        await notifier.aclose()


def cmd_deploy(settings, args):
    task = Task(
        owner=args.owner,
        repository=args.repo,
        branch=args.branch or settings.target_branch,
        commit_hash=args.commit,
        source_url=args.url,
    )
    outcome = asyncio.run(_deploy(settings, task))
    if outcome.ok:
        reply({"ok": True, "branch": str(task.key),
               "commit": task.commit_hash})
        return 0
    reply({"ok": False, "error": outcome.detail})
    return 1


def build_parser():
    parser = argparse.ArgumentParser(
        prog="deployd", description="Webhook-triggered deployment daemon")
    sub = parser.add_subparsers(dest="command")

    p = sub.add_parser("serve")
    p.add_argument("--host", default=None)
    p.add_argument("--port", type=int, default=None)

    p = sub.add_parser("sign")
    p.add_argument("payload", help="File with the raw request body")
    p.add_argument("--secret", default=None,
                   help="Defaults to ADM_WEBHOOK_SECRET")

    p = sub.add_parser("deploy")
    p.add_argument("owner")
    p.add_argument("repo")
    p.add_argument("commit")
    p.add_argument("--url", required=True, help="Repository URL to clone")
    p.add_argument("--branch", default=None,
                   help="Defaults to ADM_TARGET_BRANCH")
    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 1

    commands = {
        "serve": cmd_serve,
        "sign": cmd_sign,
        "deploy": cmd_deploy,
    }

    settings = get_settings()
    setup_logging(settings.log_level)
    try:
        return commands[args.command](settings, args)
    except (DeployError, OSError) as e:
        reply({"ok": False, "error": str(e)})
        return 1


if __name__ == "__main__":
    sys.exit(main())
