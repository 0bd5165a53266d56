# api/Ingest/main.py
import os
from typing import Optional

from fastapi import Depends, FastAPI, File, Form, HTTPException, UploadFile

from services.document_service import DocumentService, get_document_service
from utils.text_splitter import decode_text

SUPPORTED_TEXT_EXTENSIONS = {".txt", ".md", ".csv"}


def create_ingest_app() -> FastAPI:
    """
    Ingest sub-app cho tenant: mọi tài liệu upload qua đây vào partition "user".
    Kiến thức platform được nạp bằng scripts/ingest_platform.py.
    """
    ingest_app = FastAPI()

    @ingest_app.post("/ingest_file")
    async def ingest_file(
        file: UploadFile = File(...),
        user_id: str = Form(...),
        document_service: DocumentService = Depends(get_document_service),
    ):
        """Ingest file text (txt/md/csv). PDF/DOCX cần được extract text trước khi upload."""
        file_extension = os.path.splitext(file.filename or "")[1].lower()
        if file_extension not in SUPPORTED_TEXT_EXTENSIONS:
            raise HTTPException(status_code=400, detail="Unsupported file type")

        text = decode_text(await file.read())
        result = await document_service.ingest_text(
            user_id=user_id,
            text=text,
            file_name=file.filename,
        )
        return {"status": "success", **result}

    @ingest_app.post("/ingest_text")
    async def ingest_text(
        text: str = Form(...),
        user_id: str = Form(...),
        file_name: Optional[str] = Form(None),
        document_service: DocumentService = Depends(get_document_service),
    ):
        result = await document_service.ingest_text(
            user_id=user_id,
            text=text,
            file_name=file_name,
        )
        return {"status": "success", **result}

    @ingest_app.get("/documents")
    async def list_documents(
        user_id: str,
        limit: int = 50,
        document_service: DocumentService = Depends(get_document_service),
    ):
        """Danh sách tài liệu của user, kèm status ingest"""
        documents = await document_service.list_documents(user_id, limit=limit)
        return {"success": True, "data": [d.model_dump() for d in documents]}

    @ingest_app.delete("/documents/{document_id}")
    async def delete_document(
        document_id: str,
        user_id: str,
        document_service: DocumentService = Depends(get_document_service),
    ):
        """Xóa toàn bộ chunk của document trong vector store và bản ghi của nó."""
        result = await document_service.delete_document(user_id, document_id)
        return {"status": "success", **result}

    return ingest_app
