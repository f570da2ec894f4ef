"""Entry point for the offer intake package.

Usage::

    python -m offer_intake listen                 # IMAP -> bundles -> worker pool
    python -m offer_intake worker <bundle_dir>    # run one worker task in-process
    python -m offer_intake reset                  # mark all mail unseen, delete bundles
    python -m offer_intake authorize              # one-time OAuth consent
    python -m offer_intake recombine <bundle_dir> # rebuild aggregate.json
"""

from __future__ import annotations

import asyncio
import sys

MODES = ("listen", "worker", "reset", "authorize", "recombine")
_NEEDS_BUNDLE = ("worker", "recombine")


def _usage() -> None:
    print(
        "Usage: python -m offer_intake <listen|worker <bundle_dir>|reset|authorize|recombine <bundle_dir>>",
        file=sys.stderr,
    )
    sys.exit(1)


def main(argv: list[str] | None = None) -> None:
    args = sys.argv[1:] if argv is None else argv
    if not args or args[0] not in MODES:
        _usage()
    mode = args[0]
    if mode in _NEEDS_BUNDLE and len(args) < 2:
        _usage()

    from .config import ServiceConfig
    from .logging import setup_logging_from_config

    config = ServiceConfig()

    if mode == "listen":
        from .service import OfferIntakeService

        service = OfferIntakeService(config)
        asyncio.run(service.run())

    elif mode == "worker":
        from .worker import run_worker_task

        outcome = run_worker_task(args[1], config)
        print(outcome.model_dump_json(indent=2))
        if not outcome.ok:
            sys.exit(2)

    elif mode == "reset":
        from .reset import reset_mailbox

        setup_logging_from_config(config, role="cli")
        asyncio.run(reset_mailbox(config))

    elif mode == "authorize":
        from .credentials import authorize

        setup_logging_from_config(config, role="cli")
        authorize(config.oauth)

    elif mode == "recombine":
        from .bundle import Bundle

        setup_logging_from_config(config, role="cli")
        record = Bundle(args[1]).combine()
        print(f"{args[1]}: {len(record.attachments)} attachment record(s) combined")


if __name__ == "__main__":
    main()
