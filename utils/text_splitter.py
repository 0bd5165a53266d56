import logging
import os
from typing import List

import chardet
from dotenv import load_dotenv
from langchain_text_splitters import RecursiveCharacterTextSplitter

load_dotenv()

logger = logging.getLogger(__name__)


def chunk_text(text: str, chunk_size: int = None, chunk_overlap: int = None) -> List[str]:
    if not text.strip():
        return []

    if chunk_size is None:
        chunk_size = int(os.getenv("CHUNK_SIZE", 1000))
    if chunk_overlap is None:
        chunk_overlap = int(os.getenv("CHUNK_OVERLAP", 200))

    splitter = RecursiveCharacterTextSplitter(
        chunk_size=chunk_size,
        chunk_overlap=chunk_overlap,
        length_function=len,
        separators=["\n\n", "\n", ". ", " ", ""]
    )
    return splitter.split_text(text)


def decode_text(raw: bytes) -> str:
    """Decode file text upload, tự detect encoding; fallback utf-8."""
    if not raw:
        return ""
    encoding = chardet.detect(raw[:20000])["encoding"] or "utf-8"
    logger.debug(f"[Splitter] Detected encoding: {encoding}")
    try:
        return raw.decode(encoding)
    except (LookupError, UnicodeDecodeError):
        logger.warning(f"[Splitter] Decoding with {encoding} failed, falling back to utf-8")
        return raw.decode("utf-8", errors="ignore")
