#!/usr/bin/env python
"""
Server Entry Point

Usage:
    Development:  python run_server.py --dev
    Production:   python run_server.py --workers 4
    Gunicorn:     python run_server.py --gunicorn
                  (same as: gunicorn opmetrics.main:app -c gunicorn.conf.py)
"""

import argparse
import subprocess

import uvicorn

from opmetrics.config import get_settings

APP = "opmetrics.main:app"


def run_dev_server(host: str, port: int) -> None:
    """Single process with auto-reload."""
    uvicorn.run(
        APP,
        host=host,
        port=port,
        reload=True,
        reload_dirs=["opmetrics"],
        log_level="debug",
    )


def run_prod_server(host: str, port: int, workers: int) -> None:
    """
    Uvicorn workers without a process manager.

    Each worker keeps its own live-rate cache; configure Redis so they share one.
    """
    uvicorn.run(
        APP,
        host=host,
        port=port,
        workers=workers,
        proxy_headers=True,
        forwarded_allow_ips="*",
        server_header=False,
    )


if __name__ == "__main__":
    settings = get_settings()

    parser = argparse.ArgumentParser(description="Operation Metrics API Server")
    parser.add_argument("--dev", action="store_true", help="Run with auto-reload")
    parser.add_argument("--gunicorn", action="store_true", help="Run under Gunicorn")
    parser.add_argument("--host", default=settings.api_host)
    parser.add_argument("--port", type=int, default=settings.api_port)
    parser.add_argument("--workers", type=int, default=2)
    args = parser.parse_args()

    if args.dev:
        run_dev_server(args.host, args.port)
    elif args.gunicorn:
        subprocess.run(["gunicorn", APP, "-c", "gunicorn.conf.py", "--bind", f"{args.host}:{args.port}"], check=True)
    else:
        run_prod_server(args.host, args.port, args.workers)
