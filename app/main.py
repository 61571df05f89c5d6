"""codedesk main entry point.

Starts the FastAPI web server; the job queue runs inside its lifespan.
"""

from __future__ import annotations

import os
import signal
import threading

import uvicorn

from app.core.config import get_settings
from app.core.logging import get_logger, setup_logging


def main():
    """Entry point: starts the web server."""
    setup_logging()
    logger = get_logger("main")
    settings = get_settings()

    logger.info("=" * 60)
    logger.info("codedesk starting")
    logger.info("=" * 60)

    mode = settings.claude_auth_mode.lower()
    if mode == "api" and not settings.anthropic_api_key.strip():
        logger.error("ANTHROPIC_API_KEY not set - Claude Code jobs will fail (CLAUDE_AUTH_MODE=api)")
    elif mode == "auto" and not settings.anthropic_api_key.strip():
        logger.warning("ANTHROPIC_API_KEY not set - relying on the Claude Code CLI login")

    if not settings.github_token and not settings.gitlab_token:
        logger.warning("No GITHUB_TOKEN / GITLAB_TOKEN - PR/MR creation will fail")

    logger.info("Workspaces: %s", settings.workspace_dir)
    logger.info("Data: %s", settings.data_dir)
    logger.info("API: http://%s:%d", settings.web_host, settings.web_port)

    config = uvicorn.Config(
        "app.web.server:app",
        host=settings.web_host,
        port=settings.web_port,
        log_level=settings.log_level.lower(),
        reload=False,
    )
    server = uvicorn.Server(config)

    # Track Ctrl+C presses for escalating shutdown
    _ctrl_c_count = 0

    def _force_exit_after(seconds: float) -> None:
        """Force-kill the process after a grace period."""
        threading.Event().wait(seconds)
        logger.warning("Grace period expired, forcing exit")
        os._exit(1)

    def _handle_signal(signum, frame):
        nonlocal _ctrl_c_count
        _ctrl_c_count += 1

        if _ctrl_c_count == 1:
            logger.info("Shutdown requested, stopping queue (press Ctrl+C again to force)")
            t = threading.Thread(target=_force_exit_after, args=(15,), daemon=True)
            t.start()
            server.should_exit = True
        else:
            logger.warning("Second Ctrl+C, forcing immediate exit")
            os._exit(1)

    signal.signal(signal.SIGINT, _handle_signal)
    if hasattr(signal, "SIGTERM"):
        signal.signal(signal.SIGTERM, _handle_signal)

    try:
        server.run()
    except KeyboardInterrupt:
        logger.info("Shutting down...")


if __name__ == "__main__":
    main()
