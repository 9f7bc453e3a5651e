"""FastAPI application exposing the portrait converter.

Run with ``uvicorn server:app``.  The face models are loaded once when the
application starts and shared by every request.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import FastAPI, File, HTTPException, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response

from errors import DecodeError, FaceUndetectedError, PortraitError, PupilsUndetectedError
from portrait_framer import PortraitFramer, convert_portrait

logger = logging.getLogger(__name__)


def _get_framer(request: Request) -> PortraitFramer:
    framer: PortraitFramer = request.app.state.framer
    return framer


def create_app(framer: Optional[PortraitFramer] = None) -> FastAPI:
    """Create the application; ``framer`` defaults to the process-wide models."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if getattr(app.state, "framer", None) is None:
            app.state.framer = PortraitFramer()
        logger.info("Portrait converter ready")
        yield

    application = FastAPI(title="Portrait Converter", version="1.0.0", lifespan=lifespan)
    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    application.state.framer = framer

    @application.get("/api/v1/health")
    async def health() -> dict:
        return {"status": "ok"}

    @application.post(
        "/api/v1/portrait",
        summary="Convert a photo into a portrait",
        response_class=Response,
        response_description="PNG-encoded portrait",
    )
    async def portrait(request: Request, file: UploadFile = File(...)) -> Response:
        """Detect the face, level the eyes, crop and tone the uploaded image."""
        data = await file.read()
        if not data:
            raise HTTPException(status_code=400, detail="Uploaded file is empty")

        try:
            png = await convert_portrait(data, framer=_get_framer(request))
        except DecodeError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except (FaceUndetectedError, PupilsUndetectedError) as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc
        except PortraitError as exc:
            logger.error("portrait conversion failed filename=%s error=%s", file.filename, exc)
            raise HTTPException(status_code=500, detail=str(exc)) from exc

        logger.info("portrait converted filename=%s bytes_in=%d bytes_out=%d", file.filename, len(data), len(png))
        return Response(content=png, media_type="image/png")

    return application


app = create_app()
