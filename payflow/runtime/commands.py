from __future__ import annotations

import contextlib
import logging
from dataclasses import dataclass
from typing import Any, Mapping

from payflow.common import log_event
from payflow.payments import ReconciliationContext, ReconciliationEngine, SupabaseClient
from payflow.storage import FallbackStore, StorageSettings

from .settings import AppSettings


@dataclass(slots=True)
class Runtime:
    client: SupabaseClient
    store: FallbackStore
    engine: ReconciliationEngine
    context: ReconciliationContext


def build_engine(
    *,
    logger: logging.Logger,
    app_settings: AppSettings,
    client: Any,
    store: FallbackStore,
    context: ReconciliationContext,
) -> ReconciliationEngine:
    return ReconciliationEngine(
        logger=logger,
        client=client,
        store=store,
        context=context,
        deadline_seconds=app_settings.verification_deadline_seconds,
        verify_max_attempts=app_settings.verify_max_attempts,
        verify_base_delay=app_settings.verify_base_delay_seconds,
        status_max_attempts=app_settings.status_update_max_attempts,
        status_base_delay=app_settings.status_update_base_delay_seconds,
        max_delay=app_settings.backoff_max_delay_seconds,
        recovery_window_seconds=app_settings.recovery_window_seconds,
        pattern_min_fragment=app_settings.recovery_pattern_min_fragment,
        query_limit=app_settings.recovery_query_limit,
        stuck_age_minutes=app_settings.stuck_order_age_minutes,
        stuck_limit=app_settings.stuck_order_limit,
    )


async def bootstrap_dependencies(
    *,
    logger: logging.Logger,
    app_settings: AppSettings,
    storage_settings: StorageSettings,
) -> Runtime:
    client = SupabaseClient(
        logger=logger,
        base_url=app_settings.supabase_url,
        api_key=app_settings.supabase_anon_key,
        access_token=app_settings.supabase_access_token,
        timeout_seconds=app_settings.request_timeout_seconds,
    )
    store = FallbackStore.from_settings(storage_settings, logger)

    try:
        await client.connect()
        await store.connect()
    except Exception as error:
        log_event(
            logger,
            level="exception",
            event="bootstrap_error",
            message="Dependency bootstrap failed",
            error=str(error),
        )
        with contextlib.suppress(Exception):
            await client.close()
        with contextlib.suppress(Exception):
            await store.close()
        raise

    context = ReconciliationContext(session_id=storage_settings.session_id)
    engine = build_engine(
        logger=logger,
        app_settings=app_settings,
        client=client,
        store=store,
        context=context,
    )
    log_event(
        logger,
        level="info",
        event="bootstrap_completed",
        message="Payment reconciliation runtime ready",
        session_id=storage_settings.session_id,
        tiers=list(store.tiers),
    )
    return Runtime(client=client, store=store, engine=engine, context=context)


async def shutdown(runtime: Runtime, logger: logging.Logger) -> None:
    with contextlib.suppress(Exception):
        await runtime.client.close()
    with contextlib.suppress(Exception):
        await runtime.store.close()
    log_event(
        logger,
        level="info",
        event="shutdown_completed",
        message="Shutdown completed",
        summary=runtime.context.summary(),
    )


async def run_command(engine: ReconciliationEngine, command: str, options: Mapping[str, Any]) -> dict[str, Any]:
    """Run one CLI command and return a JSON-serializable result."""
    if command == "checkout":
        started = await engine.begin_checkout(
            options["order_id"],
            options["amount"],
            options.get("email"),
        )
        return {
            "reference": started.reference,
            "order_id": started.order_id,
            "amount": started.amount,
            "stored_in": started.stored_in,
            "created": started.created,
        }

    if command == "verify":
        return (await engine.verify_payment(options["reference"])).to_dict()

    if command == "recover":
        return (await engine.attempt_recovery(options["reference"])).to_dict()

    if command == "callback":
        params = {key: options.get(key) for key in ("reference", "trxref") if options.get(key)}
        return (await engine.handle_callback(params)).to_dict()

    if command == "abandon":
        await engine.abandon_checkout()
        return {"abandoned": True}

    if command == "update-status":
        result = await engine.bulletproof_order_status_update(
            options["order_id"],
            options["status"],
            options.get("admin_id"),
        )
        return result.to_dict()

    if command == "scan-stuck":
        return {"stuck_orders": [order.to_dict() for order in await engine.scan_stuck_orders()]}

    if command == "recover-stuck":
        return (await engine.recover_stuck_orders(admin_id=options.get("admin_id"))).to_dict()

    raise ValueError(f"Unknown command: {command}")
