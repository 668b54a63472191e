from __future__ import annotations

from app_factory import create_app


# Run with: uvicorn main:app --app-dir backend
app = create_app()
