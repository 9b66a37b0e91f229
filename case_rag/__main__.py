"""CLI entry point for case-rag."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from case_rag.config import AppConfig, load_config

logger = logging.getLogger(__name__)

_LOG_FORMAT = "%(asctime)s [%(levelname)-8s] %(name)s: %(message)s"


def _load(args: argparse.Namespace) -> AppConfig:
    try:
        return load_config(Path(args.config) if args.config else None)
    except ValueError as exc:
        print(f"Error: invalid configuration: {exc}", file=sys.stderr)
        sys.exit(2)


def cmd_chunk(args: argparse.Namespace) -> None:
    """Print the chunk windows of a file (no network access)."""
    from case_rag.exceptions import CaseRagError
    from case_rag.indexing.chunker import chunk_text, normalize_text
    from case_rag.parsers.registry import extract_text, file_type_from_name

    config = _load(args)
    path = Path(args.file)
    if not path.is_file():
        print(f"Error: '{path}' is not a file.", file=sys.stderr)
        sys.exit(1)

    try:
        text = normalize_text(extract_text(path.read_bytes(), file_type_from_name(path.name)))
    except CaseRagError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)

    size = args.size or config.chunking.chunk_size
    overlap = args.overlap if args.overlap is not None else config.chunking.overlap
    try:
        chunks = chunk_text(text, size, overlap, document_id=path.stem)
    except ValueError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(2)

    if args.json:
        print(json.dumps([c.to_dict() for c in chunks], indent=2, ensure_ascii=False))
        return
    print(f"{len(text)} chars -> {len(chunks)} chunks (size={size}, overlap={overlap})\n")
    for c in chunks:
        print(f"[{c.chunk_id}] {c.start}-{c.end}: {c.text!r}")


def cmd_generate(args: argparse.Namespace) -> None:
    """Run the full pipeline on one file and print the test cases."""
    from case_rag.db.repository import MemoryRepository
    from case_rag.exceptions import CaseRagError
    from case_rag.indexing.embedder import create_embedding_adapter
    from case_rag.indexing.store import MemoryVectorStore
    from case_rag.jobs.manager import PipelineManager
    from case_rag.llm.backend import create_backend

    config = _load(args)
    path = Path(args.file)
    if not path.is_file():
        print(f"Error: '{path}' is not a file.", file=sys.stderr)
        sys.exit(1)

    async def _run() -> int:
        manager = PipelineManager(
            config=config,
            repository=MemoryRepository(),
            store=MemoryVectorStore(config.embedding.dimension),
            embedder=create_embedding_adapter(config),
            llm=create_backend(config),
        )
        try:
            try:
                document = await manager.ingest(path.read_bytes(), path.name)
            except CaseRagError as exc:
                print(f"Error: {exc}", file=sys.stderr)
                return 1
            job_id = await manager.submit_document(document)
            print(f"Document {document.document_id}: job {job_id} started", file=sys.stderr)

            last = -1
            while True:
                status = await manager.get_job_status(job_id)
                if status["progress"] != last:
                    last = status["progress"]
                    print(f"  {status['status']:<10} {last:3d}%", file=sys.stderr)
                if status["status"] in ("completed", "failed"):
                    break
                await asyncio.sleep(0.5)

            cases = await manager.get_test_cases(document.document_id)
            if args.json:
                print(json.dumps([tc.to_dict() for tc in cases], indent=2, ensure_ascii=False))
            else:
                for i, tc in enumerate(cases, 1):
                    print(f"{i:2d}. [{tc.category.value}/{tc.priority.value}/{tc.severity.value}] {tc.title}")
            if status["error"]:
                print(f"Job failed: {status['error']}", file=sys.stderr)
                return 1
            return 0
        finally:
            await manager.close()

    sys.exit(asyncio.run(_run()))


def cmd_serve(args: argparse.Namespace) -> None:
    """Start the FastAPI server."""
    import uvicorn

    from case_rag.api.server import create_app

    config = _load(args)
    host = args.host or config.api.host
    port = args.port or config.api.port

    app = create_app(config=config)
    print(f"Starting server at http://{host}:{port}")
    print(f"API docs: http://{host}:{port}/docs\n")
    uvicorn.run(app, host=host, port=port)


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="case-rag",
        description="Generate classified test cases from business documents with RAG",
    )
    parser.add_argument("--config", help="Path to config.yaml", default=None)
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default="WARNING",
        help="Set logging level (default: WARNING)",
    )
    parser.add_argument("--log-dir", default="logs", help="Directory for the rotating log file")

    sub = parser.add_subparsers(dest="command", required=True)

    p_chunk = sub.add_parser("chunk", help="Show how a file is split into chunks")
    p_chunk.add_argument("file", help="Path to a .txt, .md, .pdf or .docx file")
    p_chunk.add_argument("--size", type=int, default=None, help="Chunk size in characters")
    p_chunk.add_argument("--overlap", type=int, default=None, help="Overlap in characters")
    p_chunk.add_argument("--json", action="store_true", help="Print chunks as JSON")
    p_chunk.set_defaults(func=cmd_chunk)

    p_gen = sub.add_parser("generate", help="Generate test cases for a document")
    p_gen.add_argument("file", help="Path to a .txt, .md, .pdf or .docx file")
    p_gen.add_argument("--json", action="store_true", help="Print test cases as JSON")
    p_gen.set_defaults(func=cmd_generate)

    p_serve = sub.add_parser("serve", help="Start the API server")
    p_serve.add_argument("--host", help="Bind host", default=None)
    p_serve.add_argument("--port", help="Bind port", type=int, default=None)
    p_serve.set_defaults(func=cmd_serve)

    args = parser.parse_args()

    console_level = getattr(logging, args.log_level)
    logging.basicConfig(level=console_level, format=_LOG_FORMAT)
    for handler in logging.root.handlers:
        handler.setLevel(console_level)

    # File handler: WARNING+ only
    log_dir = Path(args.log_dir)
    log_dir.mkdir(exist_ok=True)
    from logging.handlers import RotatingFileHandler
    file_handler = RotatingFileHandler(
        log_dir / "case_rag.log",
        maxBytes=10 * 1024 * 1024,  # 10 MB
        backupCount=3,
        encoding="utf-8",
    )
    file_handler.setLevel(logging.WARNING)
    file_handler.setFormatter(logging.Formatter(_LOG_FORMAT))
    logging.root.addHandler(file_handler)

    logger.info("Log file: %s", (log_dir / "case_rag.log").resolve())
    args.func(args)


if __name__ == "__main__":
    main()
