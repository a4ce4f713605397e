#!/usr/bin/env python3
"""Unified entry point for the Reminder Bot backend.

This module starts the API server, the MCP server and the reference
dispatcher as subprocesses and stops all of them if any one exits.
"""

import os
import signal
import subprocess
import sys
import time
from typing import Dict, List, Optional

from config import settings
from logger_config import setup_logger

logger = setup_logger(__name__, 'main.log')

# Global list to track all running processes
processes: List[subprocess.Popen] = []
shutdown_requested = False


def service_commands() -> Dict[str, List[str]]:
    """Scripts to launch, keyed by service name."""
    services = {
        "API server": [sys.executable, "api_server.py"],
        "MCP server": [sys.executable, "mcp_server.py"],
    }
    if settings.WORKER_ENABLED:
        services["Dispatcher"] = [sys.executable, "background_worker.py"]
    return services


def signal_handler(signum, frame):
    """Handle shutdown signals gracefully."""
    global shutdown_requested
    if shutdown_requested:
        logger.warning("Force shutdown requested")
        sys.exit(1)

    shutdown_requested = True
    logger.info(f"Received signal {signum}, initiating graceful shutdown...")
    shutdown_services()


def shutdown_services():
    """Stop all running services."""
    logger.info("Stopping all services...")
    for process in processes:
        if process.poll() is None:
            logger.info(f"Terminating process (PID: {process.pid})")
            process.terminate()

    # Wait for graceful termination (max 5 seconds per process)
    for process in processes:
        try:
            process.wait(timeout=5)
        except subprocess.TimeoutExpired:
            logger.warning(f"Force killing process (PID: {process.pid})")
            process.kill()
            process.wait()

    logger.info("All services stopped")
    sys.exit(0)


def start_service(name: str, command: List[str], cwd: str,
                  env: Optional[Dict[str, str]] = None) -> subprocess.Popen:
    logger.info(f"Starting {name}...")
    process = subprocess.Popen(command, cwd=cwd, env=env)
    processes.append(process)
    time.sleep(2)
    return process


def main():
    """Main entry point - start all services."""
    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)

    logger.info("=" * 60)
    logger.info("Reminder Bot - Unified Startup")
    logger.info("=" * 60)

    current_dir = os.path.dirname(os.path.abspath(__file__))
    env = os.environ.copy()
    # The MCP server must be reachable over the network when launched here
    env["MCP_TRANSPORT"] = "sse"

    try:
        names = {}
        for name, command in service_commands().items():
            process = start_service(name, command, current_dir, env=env)
            names[process.pid] = name

        logger.info("=" * 60)
        logger.info("All services started successfully!")
        logger.info(f"  - API Server: http://{settings.API_HOST}:{settings.API_PORT}")
        logger.info(f"  - API Docs: http://{settings.API_HOST}:{settings.API_PORT}/docs")
        logger.info(f"  - MCP Server: http://{settings.MCP_HOST}:{settings.MCP_PORT}/sse")
        logger.info(f"  - Dispatcher: {'Active' if settings.WORKER_ENABLED else 'Disabled'}")
        logger.info("=" * 60)

        # Stop everything if any service dies
        while not shutdown_requested:
            for process in processes:
                if process.poll() is not None:
                    logger.error(
                        f"{names.get(process.pid, 'Service')} (PID: {process.pid}) "
                        f"has stopped unexpectedly!"
                    )
                    shutdown_services()
            time.sleep(5)

    except OSError as e:
        logger.error(f"Error starting services: {e}")
        shutdown_services()


if __name__ == "__main__":
    main()
