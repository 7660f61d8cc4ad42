from __future__ import annotations

import argparse
import asyncio
import json
import sys
from typing import Any

from dotenv import load_dotenv

from payflow.common import log_event
from payflow.runtime import AppSettings, bootstrap_dependencies, run_command, setup_logger, shutdown
from payflow.storage import StorageSettings


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="payflow",
        description="Paystack payment verification and order reconciliation",
    )
    subcommands = parser.add_subparsers(dest="command", required=True)

    checkout = subcommands.add_parser("checkout", help="Generate and store a checkout reference")
    checkout.add_argument("order_id")
    checkout.add_argument("amount", type=float)
    checkout.add_argument("--email", default=None)

    verify = subcommands.add_parser("verify", help="Verify a payment reference")
    verify.add_argument("reference")

    recover = subcommands.add_parser("recover", help="Run the recovery methods for a reference")
    recover.add_argument("reference")

    callback = subcommands.add_parser("callback", help="Handle a payment-processor redirect")
    callback.add_argument("--reference", default=None)
    callback.add_argument("--trxref", default=None)

    subcommands.add_parser("abandon", help="Clear stored checkout state")

    update_status = subcommands.add_parser("update-status", help="Apply an order status transition")
    update_status.add_argument("order_id")
    update_status.add_argument("status")
    update_status.add_argument("--admin-id", dest="admin_id", default=None)

    subcommands.add_parser("scan-stuck", help="List orders stuck in pending")

    recover_stuck = subcommands.add_parser("recover-stuck", help="Confirm stuck orders with paid transactions")
    recover_stuck.add_argument("--admin-id", dest="admin_id", default=None)

    return parser


async def main(argv: list[str] | None = None) -> int:
    load_dotenv()
    args = build_parser().parse_args(argv)

    app_settings = AppSettings.from_env()
    storage_settings = StorageSettings.from_env()
    logger = setup_logger(app_settings.log_level)

    runtime = await bootstrap_dependencies(
        logger=logger,
        app_settings=app_settings,
        storage_settings=storage_settings,
    )
    try:
        options: dict[str, Any] = vars(args)
        result = await run_command(runtime.engine, args.command, options)
    except Exception as error:
        log_event(
            logger,
            level="exception",
            event="command_failed",
            message="Command failed",
            command=args.command,
            error=str(error),
        )
        return 1
    finally:
        await shutdown(runtime, logger)

    print(json.dumps(result, ensure_ascii=False, indent=2, default=str))
    return 0 if result.get("success", True) else 2


def cli() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    cli()
