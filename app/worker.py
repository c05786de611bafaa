"""
Standalone orchestrator runner - submits one job and follows it to the end.

No HTTP server; useful for smoke-testing providers and the store:

    TEST_MODE=true python -m app.worker --keyword "solar panels"
    python -m app.worker --keyword "heat pumps" --mode refresh --existing-file old.html

Prints the final job record as JSON and exits 0 on completed, 1 on failed.
"""
import argparse
import asyncio
import json
import signal
import sys
import uuid
from typing import Optional, Sequence

from app.config import get_settings
from app.main import build_orchestrator
from app.services.errors import OrchestratorError
from app.utils.logger import logger


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="python -m app.worker", description="Run one content job")
    parser.add_argument("--keyword", required=True)
    parser.add_argument("--mode", choices=("generate", "refresh"), default="generate")
    parser.add_argument("--client-id", default="cli")
    parser.add_argument("--existing-file", help="HTML file to refresh (refresh mode)")
    parser.add_argument("--publish", action="store_true", help="Publish to WordPress as a draft")
    parser.add_argument("--timeout", type=float, default=900.0, help="Seconds to wait for a terminal state")
    return parser.parse_args(argv)


def build_payload(args: argparse.Namespace) -> dict:
    payload = {
        "keyword": args.keyword,
        "mode": args.mode,
        "requestId": f"cli-{uuid.uuid4().hex[:12]}",
        "clientId": args.client_id,
    }
    if args.existing_file:
        with open(args.existing_file, encoding="utf-8") as fh:
            payload["existingContent"] = fh.read()
    if args.publish:
        payload["publish"] = True
    return payload


async def run(args: argparse.Namespace) -> int:
    settings = get_settings()
    orchestrator = build_orchestrator(settings)
    await orchestrator.store.initialize()

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows event loops have no signal handlers
            pass

    try:
        ack = await orchestrator.submit_payload(build_payload(args))
        logger.info("worker.submitted", extra={"job_id": ack.job_id, "request_id": ack.request_id})

        waiter = asyncio.create_task(orchestrator.wait_for_terminal(ack.job_id, timeout=args.timeout))
        stopper = asyncio.create_task(stop.wait())
        done, _ = await asyncio.wait({waiter, stopper}, return_when=asyncio.FIRST_COMPLETED)
        stopper.cancel()

        if waiter not in done:
            waiter.cancel()
            logger.warning("worker.interrupted", extra={"job_id": ack.job_id})
            return 130

        record = waiter.result()
    except asyncio.TimeoutError:
        logger.error("worker.timeout", extra={"error": f"no terminal state after {args.timeout}s"})
        return 2
    except OrchestratorError as exc:
        logger.error("worker.submit_failed", extra={"error": str(exc)[:500], "error_type": type(exc).__name__})
        return 2
    finally:
        await orchestrator.shutdown()
        await orchestrator.store.close()

    print(json.dumps(record.to_dict(), indent=2))
    return 0 if record.status.value == "completed" else 1


def main(argv: Optional[Sequence[str]] = None) -> int:
    return asyncio.run(run(parse_args(argv)))


if __name__ == "__main__":
    sys.exit(main())
