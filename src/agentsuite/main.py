# Copyright (C) 2026 StableLlama
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

"""Defines the main unit so this responsibility stays isolated, testable, and easy to evolve.

Main application entry point for the AgentSuite relay server.
Includes configuration and logging setup, error handling, the relay runtime
lifecycle and router registration.
"""

from __future__ import annotations

import argparse
import datetime
import logging
import os
import sys
from contextlib import asynccontextmanager
from typing import Any, Mapping, Optional

from fastapi import APIRouter, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

from agentsuite.api.v1.chat import router as chat_router
from agentsuite.api.v1.debug import router as debug_router
from agentsuite.api.v1.http_responses import error_json
from agentsuite.core.config import (
    CONFIG_DIR,
    load_machine_config,
    resolve_allowed_origins,
    resolve_relay_settings,
    resolve_uploads_dir,
)
from agentsuite.services.exceptions import ServiceError
from agentsuite.services.llm.llm_stream_ops import ChunkSource, OpenAIChunkSource
from agentsuite.services.relay.relay_runtime import RelayRuntime
from agentsuite.services.store.message_store import (
    ConvexMessageStore,
    InMemoryMessageStore,
    MessageStore,
)

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: str = "info") -> None:
    """Route application logs to stderr at ``level`` (uvicorn's own names)."""
    numeric = logging.DEBUG if level == "trace" else getattr(
        logging, level.upper(), logging.INFO
    )
    logging.basicConfig(level=numeric, format=LOG_FORMAT, stream=sys.stderr)
    logging.getLogger("agentsuite").setLevel(numeric)
    logging.getLogger("httpx").setLevel(max(numeric, logging.WARNING))


def build_message_store(machine: Mapping[str, Any]) -> MessageStore:
    store_cfg = machine.get("store") or {}
    convex_url = store_cfg.get("convex_url") if isinstance(store_cfg, Mapping) else None
    # An unset ${CONVEX_URL} placeholder survives interpolation verbatim
    if convex_url and "${" not in str(convex_url):
        return ConvexMessageStore(
            convex_url, timeout_s=float(store_cfg.get("timeout_s") or 10.0)
        )
    logger.warning(
        "no CONVEX_URL configured; assistant messages are kept in memory only"
    )
    return InMemoryMessageStore()


def create_app(
    machine: Optional[Mapping[str, Any]] = None,
    *,
    store: MessageStore | None = None,
    chunk_source: ChunkSource | None = None,
) -> FastAPI:
    """Create the FastAPI app.

    Uvicorn's reload mode requires an import string; using an app factory keeps
    route registration consistent across reload subprocesses. Tests pass their
    own store and chunk source.
    """
    if machine is None:
        machine = load_machine_config(CONFIG_DIR / "machine.json") or {}
    uploads_dir = resolve_uploads_dir(machine)

    runtime = RelayRuntime(
        store=store if store is not None else build_message_store(machine),
        chunk_source=chunk_source or OpenAIChunkSource(machine),
        settings=resolve_relay_settings(machine),
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        uploads_dir.mkdir(parents=True, exist_ok=True)
        yield
        await runtime.shutdown()

    app = FastAPI(title="AgentSuite", lifespan=lifespan)
    app.state.machine = machine
    app.state.relay_runtime = runtime
    app.state.uploads_dir = uploads_dir

    app.add_middleware(
        CORSMiddleware,
        allow_origins=resolve_allowed_origins(machine),
        allow_origin_regex=r"http://(localhost|127\.0\.0\.1)(:\d+)?",
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["*"],
    )

    # Uploaded images, referenced by the frontend as /images/<file>
    app.mount(
        "/images",
        StaticFiles(directory=str(uploads_dir), check_dir=False),
        name="images",
    )

    api_v1_router = APIRouter(prefix="/api/v1")
    api_v1_router.include_router(chat_router)
    api_v1_router.include_router(debug_router)
    api_v1_router.add_api_route(
        "/health",
        endpoint=lambda: {
            "status": "ok",
            "timestamp": datetime.datetime.now(datetime.timezone.utc).isoformat(),
        },
        methods=["GET"],
    )
    app.include_router(api_v1_router)

    # --------------- global exception handler ---------------
    @app.exception_handler(ServiceError)
    async def _service_error_handler(
        _request: Request, exc: ServiceError
    ) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("request failed: %s", exc.detail)
        return error_json(
            exc.detail, status_code=exc.status_code, **exc.response_fields()
        )

    return app


app = create_app()


def build_arg_parser() -> argparse.ArgumentParser:
    """Build Arg Parser."""
    parser = argparse.ArgumentParser(
        prog="agentsuite",
        description="Run the AgentSuite streaming relay server",
    )
    parser.add_argument(
        "--host", default="127.0.0.1", help="Host to bind (default: 127.0.0.1)"
    )
    parser.add_argument(
        "--port",
        type=int,
        default=int(os.getenv("PORT", "3001")),
        help="Port to bind (default: $PORT or 3001)",
    )
    parser.add_argument(
        "--reload",
        action="store_true",
        help="Enable auto-reload (development only)",
    )
    parser.add_argument(
        "--log-level",
        default="info",
        choices=["critical", "error", "warning", "info", "debug", "trace"],
        help="Log level for the server (default: info)",
    )
    parser.add_argument(
        "--llm-dump",
        action="store_true",
        help="Dump raw engine request/response data to a file",
    )
    parser.add_argument(
        "--llm-dump-path",
        default=None,
        help="Path for raw engine dump file (overrides default)",
    )
    return parser


def main(argv: Optional[list[str]] = None) -> None:
    """CLI entrypoint to run the server via a normal Python invocation.

    Examples:
      python -m agentsuite.main --help
      python -m agentsuite.main --host 0.0.0.0 --port 3001 --reload

    Generations live in this process, so there is no multi-worker mode:
    an abort must reach the worker that runs the generation.
    """
    parser = build_arg_parser()
    args = parser.parse_args(argv)

    configure_logging(args.log_level)

    if args.llm_dump:
        os.environ["AGENTSUITE_LLM_DUMP"] = "1"
    if args.llm_dump_path:
        os.environ["AGENTSUITE_LLM_DUMP_PATH"] = args.llm_dump_path

    # Import uvicorn lazily so that importing this module doesn't require it for tests/tools
    import uvicorn  # type: ignore

    if args.reload:
        app_target: Any = "agentsuite.main:create_app"
        factory = True
    else:
        app_target = app
        factory = False

    uvicorn.run(
        app_target,
        host=args.host,
        port=args.port,
        reload=bool(args.reload),
        log_level=args.log_level,
        factory=factory,
    )


if __name__ == "__main__":
    main()
