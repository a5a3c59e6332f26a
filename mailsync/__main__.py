"""Entry point for the mailsync package.

Usage::

    python -m mailsync serve                            # sync on an interval + health endpoints
    python -m mailsync sync [user ...]                  # one pass, print reports as JSON lines
    python -m mailsync add-account <user> <host> [port] # test login and register

``add-account`` reads the password from ``MAILSYNC_PASSWORD`` or prompts.
"""

from __future__ import annotations

import asyncio
import getpass
import os
import sys

USAGE = "Usage: python -m mailsync <serve | sync [user ...] | add-account <user> <host> [port]>"


def main() -> None:
    if len(sys.argv) < 2 or sys.argv[1] not in ("serve", "sync", "add-account"):
        print(USAGE, file=sys.stderr)
        sys.exit(1)

    from .config import MailSyncConfig
    from .logging import setup_logging
    from .service import MailSyncService

    config = MailSyncConfig()
    service = MailSyncService(config)
    mode, args = sys.argv[1], sys.argv[2:]

    if mode == "serve":
        asyncio.run(service.run())
        return

    setup_logging(json=config.log_json, level=config.log_level)

    if mode == "sync":
        reports = asyncio.run(_sync(service, args or None))
        for report in reports:
            print(report.model_dump_json())
        sys.exit(0 if all(r.ok for r in reports) else 2)

    elif mode == "add-account":
        if len(args) not in (2, 3) or (len(args) == 3 and not args[2].isdigit()):
            print(USAGE, file=sys.stderr)
            sys.exit(1)
        from .errors import MailSyncError
        from .models import ImapServer

        user, host = args[0], args[1]
        imap = ImapServer(host=host, port=int(args[2])) if len(args) == 3 else ImapServer(host=host)
        password = os.environ.get("MAILSYNC_PASSWORD") or getpass.getpass(f"Password for {user}: ")
        try:
            asyncio.run(_add_account(service, user, password, imap))
        except MailSyncError as exc:
            print(f"error: {exc}", file=sys.stderr)
            sys.exit(2)
        print(f"registered {user}")


async def _sync(service, users):
    await service.start()
    try:
        return await service.run_once(users)
    finally:
        await service.stop()


async def _add_account(service, user, password, imap):
    await service.start()
    try:
        return await service.add_account(user, password, imap)
    finally:
        await service.stop()


if __name__ == "__main__":
    main()
