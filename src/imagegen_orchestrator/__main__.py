"""Entry point for `python -m imagegen_orchestrator` and the `imagegen-worker` script."""

from __future__ import annotations

import argparse
import logging
import signal
import threading
from pathlib import Path

from imagegen_orchestrator.adapters import LLMJudgeEvaluator, LLMPromptOptimizer, OpenAIImageSynthesizer
from imagegen_orchestrator.costs import PriceSheet
from imagegen_orchestrator.events import GenerationEvents
from imagegen_orchestrator.loops import IterationLoop
from imagegen_orchestrator.registry import InMemoryAgentRegistry
from imagegen_orchestrator.settings import RuntimeSettings
from imagegen_orchestrator.state_store import GenerationStateStore
from imagegen_orchestrator.storage import FilesystemObjectStorage
from imagegen_orchestrator.worker import GenerationWorker


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the iterative image generation worker")
    parser.add_argument(
        "--agents-file",
        type=Path,
        required=True,
        help="JSON array of judge agents available to requests",
    )
    parser.add_argument("--once", action="store_true", help="Poll the pending queue once and wait for the claimed runs")
    parser.add_argument("--max-concurrent", type=int, default=None, help="Override IMAGEGEN_MAX_CONCURRENT_REQUESTS")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity",
    )
    return parser.parse_args(argv)


def build_worker(settings: RuntimeSettings, agents_file: Path, max_concurrent: int | None = None) -> GenerationWorker:
    store = GenerationStateStore(settings.database_file(), pricing=PriceSheet.from_settings(settings))
    storage = FilesystemObjectStorage(settings.storage_path())
    registry = InMemoryAgentRegistry.from_json_file(agents_file)
    loop = IterationLoop(
        store=store,
        registry=registry,
        optimizer=LLMPromptOptimizer(model_name=settings.optimizer_model),
        synthesizer=OpenAIImageSynthesizer(model_name=settings.image_model),
        evaluator=LLMJudgeEvaluator(storage=storage, model_name=settings.judge_model),
        storage=storage,
        settings=settings,
        events=GenerationEvents(),
        checkpoint_path=settings.checkpoint_path(),
    )
    return GenerationWorker(
        store=store,
        loop=loop,
        max_concurrent=max_concurrent if max_concurrent is not None else settings.max_concurrent_requests,
        poll_interval_seconds=settings.poll_interval_seconds,
    )


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        settings = RuntimeSettings.from_env()
        worker = build_worker(settings, args.agents_file, args.max_concurrent)
    except (OSError, ValueError, RuntimeError) as exc:
        logging.error("Unable to start worker: %s", exc)
        return 1

    try:
        if args.once:
            claimed = worker.poll()
            worker.wait()
            print(f"processed={len(claimed)}")
            return 0

        stop_event = threading.Event()
        for signum in (signal.SIGINT, signal.SIGTERM):
            signal.signal(signum, lambda *_: stop_event.set())
        worker.run_forever(stop_event)
        return 0
    finally:
        worker.shutdown()


if __name__ == "__main__":
    raise SystemExit(main())
