#!/usr/bin/env python3
"""
CLI script for extracting a requirements graph from a single document.
"""
import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

# Add the project root to Python path
sys.path.append(str(Path(__file__).parent.parent))

from config.settings import settings
from core.extraction_orchestrator import ExtractionOrchestrator
from core.exceptions import InvalidConfigurationError
from core.graph_persistence import Neo4jGraphPersistence
from core.job_store import JobStatus, create_job_store
from core.llm import OllamaModelService
from core.toon_codec import encode_tables
from ingestion.text_extraction import DocumentTextExtractor

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def build_orchestrator(persist: bool) -> ExtractionOrchestrator:
    persistence = Neo4jGraphPersistence() if persist else None
    return ExtractionOrchestrator(
        text_extractor=DocumentTextExtractor(),
        model_service=OllamaModelService(),
        job_store=create_job_store(),
        persistence=persistence,
    )


def main():
    """Main entry point for the extraction script."""
    parser = argparse.ArgumentParser(
        description="Extract a requirements knowledge graph from a document",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Extract with the default model and print a summary
  python scripts/extract_document.py --file specs/system.pdf

  # Write the full job (graph, warnings, token stats) to a file
  python scripts/extract_document.py --file specs/system.md --output job.json

  # Persist the merged graph into Neo4j
  python scripts/extract_document.py --file specs/system.docx --persist --project demo
        """,
    )
    parser.add_argument("--file", "-f", type=Path, required=True, help="Document to extract")
    parser.add_argument("--project", "-p", default="", help="Project name stored on the job")
    parser.add_argument("--model", "-m", help=f"Model id (default: {settings.default_model})")
    parser.add_argument("--chunk-size", type=int, help="Target tokens per chunk")
    parser.add_argument("--overlap", type=int, help="Token overlap between chunks")
    parser.add_argument("--concurrency", type=int, help="Concurrent model calls")
    parser.add_argument("--persist", action="store_true", help="Write the merged graph to Neo4j")
    parser.add_argument("--output", "-o", type=Path, help="Write the job as JSON to this file")
    parser.add_argument("--toon", action="store_true", help="Print the merged graph as TOON tables")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")
    args = parser.parse_args()

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    if not args.file.exists():
        logger.error(f"File not found: {args.file}")
        sys.exit(1)

    options = {
        key: value
        for key, value in {
            "model": args.model,
            "chunk_target_tokens": args.chunk_size,
            "chunk_overlap_tokens": args.overlap,
            "concurrency": args.concurrency,
            "persist": args.persist or None,
        }.items()
        if value is not None
    }

    orchestrator = build_orchestrator(args.persist or settings.persist_to_graph)
    try:
        job = asyncio.run(orchestrator.extract(str(args.file), args.project, options))
    except InvalidConfigurationError as e:
        logger.error(f"❌ Invalid options: {e}")
        sys.exit(2)

    summary = job.summary()
    print(json.dumps(summary, indent=2))
    for error in job.errors:
        logger.warning(f"chunk {error.chunk_index}: [{error.kind.value}] {error.message}")

    if args.toon and job.final_graph:
        print(encode_tables(job.final_graph.to_tables()))

    if args.output:
        args.output.write_text(json.dumps(job.to_dict(), indent=2, ensure_ascii=False), encoding="utf-8")
        logger.info(f"Wrote job {job.id} to {args.output}")

    if job.status in (JobStatus.FAILED, JobStatus.CANCELLED):
        logger.error(f"❌ Job {job.id} {job.status.value}")
        sys.exit(1)
    logger.info(f"✅ Job {job.id} {job.status.value}")
    sys.exit(0)


if __name__ == "__main__":
    main()
