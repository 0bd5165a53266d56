"""Operator tool for loading shared platform knowledge.

Tenants can only ingest into their own partition through the API; platform
documents are visible to every tenant, so they are loaded from here.
"""

import argparse
import asyncio
import os
import sys

from dotenv import load_dotenv

from services.document_service import DocumentService
from utils.errors import AppError
from utils.logging_config import setup_logging
from utils.text_splitter import decode_text

DEFAULT_UPLOADER = "platform-admin"


async def ingest_files(service: DocumentService, paths, uploader: str) -> int:
    failures = 0
    for path in paths:
        with open(path, "rb") as f:
            text = decode_text(f.read())
        try:
            result = await service.ingest_text(
                user_id=uploader,
                text=text,
                file_name=os.path.basename(path),
                partition="platform",
            )
        except AppError as e:
            print(f"Error: {path}: {e.message}", file=sys.stderr)
            failures += 1
            continue
        print(f"{result['document_id']}  {path}  ({result['chunk_count']} chunks)")
    return failures


async def delete_documents(service: DocumentService, document_ids, uploader: str) -> int:
    failures = 0
    for document_id in document_ids:
        try:
            result = await service.delete_document(uploader, document_id, partition="platform")
        except AppError as e:
            print(f"Error: {document_id}: {e.message}", file=sys.stderr)
            failures += 1
            continue
        print(f"Deleted {document_id} ({result['chunks_removed']} chunks)")
    return failures


def main() -> None:
    """Main entry point for ragflow-platform."""
    parser = argparse.ArgumentParser(
        prog="ragflow-platform",
        description="Load or remove shared platform knowledge",
    )
    parser.add_argument(
        "--uploader",
        default=DEFAULT_UPLOADER,
        help=f"Identity recorded as the document owner (default: {DEFAULT_UPLOADER})",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    ingest_parser = subparsers.add_parser("ingest", help="Ingest text files (.txt/.md/.csv)")
    ingest_parser.add_argument("paths", nargs="+", help="Files to ingest")

    delete_parser = subparsers.add_parser("delete", help="Delete platform documents")
    delete_parser.add_argument("document_ids", nargs="+", help="Document ids to delete")

    args = parser.parse_args()

    load_dotenv()
    setup_logging()
    service = DocumentService()

    if args.command == "ingest":
        failures = asyncio.run(ingest_files(service, args.paths, args.uploader))
    else:
        failures = asyncio.run(delete_documents(service, args.document_ids, args.uploader))
    sys.exit(1 if failures else 0)


if __name__ == "__main__":
    main()
