"""
EasyPDF Backend - REST API for browser-based PDF tools

This package provides a FastAPI-based web service behind the EasyPDF tools:

- PDF uploads with type and size validation
- Merge, split, compress, rotate, watermark, unlock, e-sign and OCR jobs
- Batch processing with per-file isolation and a success-rate summary
- Job status polling and a WebSocket progress channel
- Path-checked downloads with signed, expiring download tokens
- Profile, history, usage stats and subscription management

Every tool request becomes a tracked ProcessingJob that runs to a terminal
state within the request; PyMuPDF does the document work and Tesseract the
text recognition.

Key Components:
    - main: application factory and HTTP endpoint definitions
    - job_manager: job lifecycle, premium gating and history recording
    - pdf_operations: PyMuPDF adapter normalizing library failures
    - file_store: upload/output roots and the download path check
    - database: SQLite persistence for users, files, jobs and history
    - configuration: omegaconf settings with environment overrides

Usage:
    Run the API server with:
        uvicorn easypdf_backend.asgi:app --reload --host 0.0.0.0 --port 8000

    Or build an app with custom settings:
        uvicorn easypdf_backend.main:create_app --factory
"""

__version__ = "0.1.0"
