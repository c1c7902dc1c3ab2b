from __future__ import annotations

import argparse
import logging
import os
import sys
import uuid

from fastapi import FastAPI
import uvicorn

from app.api.http_app import build_app
from app.logging_setup import configure_logging
from app.roles import SUPPORTED_ROLES, RuntimeRole, validate_role
from app.services.bootstrap import RuntimeContainer, build_runtime_container

ROLE_PORTS = {
    "api": 8000,
    "worker-reaper": 8100,
    "worker-materializer": 8200,
}


def _default_port(role: str) -> int:
    return ROLE_PORTS.get(role, 8000)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Image task engine runtime entrypoint")
    parser.add_argument("--role", required=True, help=f"Runtime role ({', '.join(SUPPORTED_ROLES)})")
    parser.add_argument("--host", default=os.getenv("APP_HOST", "0.0.0.0"))
    parser.add_argument("--port", type=int, default=None, help="Defaults to a per-role port")
    parser.add_argument(
        "--dry-run-startup",
        action="store_true",
        help="Wire the role, log the selected backends and exit",
    )
    parser.add_argument(
        "--reload",
        action="store_true",
        help="Enable code reload (dev mode)",
    )
    return parser.parse_args(argv)


def _backends(container: RuntimeContainer) -> dict[str, str]:
    return {
        "repository": type(container.repository).__name__,
        "provider": type(container.provider).__name__,
        "storage": type(container.storage).__name__,
    }


def _role_app(role: RuntimeRole, *, run_id: str, container: RuntimeContainer) -> FastAPI:
    return build_app(
        role=role.name,
        run_id=run_id,
        worker_loops=container.worker_loops,
        api_deps=container.api_deps if role.owns_executor else None,
        executor_pool=container.executor_pool,
        on_startup=container.on_startup,
        on_shutdown=container.on_shutdown,
    )


def create_runtime_app() -> FastAPI:
    """uvicorn factory for `--reload`; the role comes from APP_ROLE."""
    role = validate_role(os.getenv("APP_ROLE", "api"))
    configure_logging()
    return _role_app(role, run_id=str(uuid.uuid4()), container=build_runtime_container(role))


def run(argv: list[str] | None = None) -> int:
    args = parse_args(argv)

    try:
        role = validate_role(args.role)
    except ValueError as exc:
        sys.stderr.write(f"ERROR: {exc}\n")
        sys.stderr.write(f"Try one of: {', '.join(SUPPORTED_ROLES)}\n")
        return 2

    configure_logging()
    run_id = str(uuid.uuid4())
    logger = logging.getLogger("runtime")
    context = {"role": role.name, "service": role.name, "run_id": run_id}

    container = build_runtime_container(role)
    logger.info("runtime initialized", extra={**context, **_backends(container)})

    if args.dry_run_startup:
        logger.info("dry-run startup complete", extra=context)
        return 0

    port = args.port if args.port is not None else _default_port(role.name)
    if args.reload:
        os.environ["APP_ROLE"] = role.name
        uvicorn.run(
            "app.main:create_runtime_app",
            host=args.host,
            port=port,
            log_level="warning",
            reload=True,
            factory=True,
        )
        return 0

    uvicorn.run(_role_app(role, run_id=run_id, container=container), host=args.host, port=port, log_level="warning")
    return 0


if __name__ == "__main__":
    raise SystemExit(run())
