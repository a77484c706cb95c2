#!/usr/bin/env python3
"""
Run the ingestion worker against the configured store.

Claims pending jobs (highest priority first), chunks, enriches and embeds
them, and keeps polling until interrupted.

Usage:
    python -m execution.run_ingestion_worker                  # Run until Ctrl+C
    python -m execution.run_ingestion_worker --once           # Drain the queue and exit
    python -m execution.run_ingestion_worker --workers 2      # Two worker threads
    python -m execution.run_ingestion_worker --no-enrich      # Skip contextual summaries
"""

import os
import signal
import logging
import argparse
import threading

from dotenv import load_dotenv

load_dotenv()

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger(__name__)


def build_store(backend: str):
    if backend == "memory":
        from execution.juris_rag.memory_store import InMemoryStore
        logger.warning(
            "Memory store is private to this process and starts empty; "
            "the API runs its own worker when JURIS_RAG_STORE=memory"
        )
        return InMemoryStore()

    from execution.juris_rag.vector_store import VectorStore
    store = VectorStore()
    store.connect()
    store.initialize_schema()
    return store


def build_worker(store, enrich: bool = True):
    from execution.juris_rag.chunker import LegalChunker
    from execution.juris_rag.embeddings import get_embedding_service
    from execution.juris_rag.enricher import ContextualEnricher, EnricherConfig
    from execution.juris_rag.ingestion_queue import IngestionQueue
    from execution.juris_rag.language_config import LanguageConfig
    from execution.juris_rag.worker import IngestionWorker

    language_config = LanguageConfig.for_language(os.getenv("JURIS_RAG_LANGUAGE", "pt"))
    return IngestionWorker(
        queue=IngestionQueue(store),
        store=store,
        chunker=LegalChunker(language_config=language_config),
        enricher=ContextualEnricher(
            EnricherConfig(model=language_config.llm_model, enabled=enrich),
            language_config=language_config,
        ),
        embeddings=get_embedding_service(language_config=language_config),
    )


def main():
    parser = argparse.ArgumentParser(description="Process queued ingestion jobs")
    parser.add_argument("--store", choices=["postgres", "memory"],
                        default=os.getenv("JURIS_RAG_STORE", "postgres"))
    parser.add_argument("--once", action="store_true", help="Drain the queue and exit")
    parser.add_argument("--workers", type=int, default=1, help="Number of worker threads")
    parser.add_argument("--poll-interval", type=float, default=5.0,
                        help="Seconds to wait when the queue is empty")
    parser.add_argument("--no-enrich", action="store_true", help="Disable contextual summaries")
    args = parser.parse_args()

    store = build_store(args.store)
    worker = build_worker(store, enrich=not args.no_enrich)

    if args.once:
        processed = 0
        while True:
            report = worker.run_once()
            if report is None:
                break
            processed += 1
            logger.info(f"Job {report.job_id} {report.status.value}: {report.summary()}")
        logger.info(f"Queue drained ({processed} jobs)")
        store.close()
        return

    stop_event = threading.Event()

    def _shutdown(signum, frame):
        logger.info("Shutdown requested, finishing current job...")
        stop_event.set()

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)

    threads = [
        threading.Thread(
            target=worker.run_forever,
            args=(stop_event, args.poll_interval),
            name=f"ingestion-worker-{i}",
        )
        for i in range(max(1, args.workers))
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    store.close()


if __name__ == "__main__":
    main()
