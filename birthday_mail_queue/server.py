# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""ASGI application wiring for uvicorn.

The processor is owned by the application lifespan: it is initialised (and
started when ``start_active`` is set) on startup and closed on shutdown.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any, Dict

import uvicorn
from fastapi import FastAPI

from .api import create_app
from .config import build_processor


def build_app(settings: Dict[str, Any]) -> FastAPI:
    """Create the API together with the processor described by ``settings``."""
    processor = build_processor(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        await processor.init()
        if settings.get("start_active"):
            await processor.start_processing()
        yield
        await processor.close()

    return create_app(processor, api_token=settings.get("api_token"), lifespan=lifespan)


def serve(settings: Dict[str, Any]) -> None:
    """Serve the API with uvicorn until interrupted."""
    app = build_app(settings)
    uvicorn.run(app, host=str(settings["http_host"]), port=int(settings["http_port"]))
