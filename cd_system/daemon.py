"""
Entry point of the continuous-deployment daemon.

Clones the repository given by $GIT_URL, builds and starts the application it
describes, then listens for push webhooks signed with $WEBHOOK_SECRET and
redeploys on each one.
"""

import argparse
import logging
import sys

from cd_system import config
from cd_system.config import DaemonSettings, SettingsError
from cd_system.orchestrator import DeploymentOrchestrator
from cd_system.webhook_server import create_app

logger = logging.getLogger("cd_system.daemon")


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Continuous deployment daemon")
    parser.add_argument("--git-url", help="Repository to deploy (default: $GIT_URL)")
    parser.add_argument("--webhook-secret", help="Webhook shared secret (default: $WEBHOOK_SECRET)")
    parser.add_argument("--host", help=f"Listening host (default: {config.DEFAULT_HOST})")
    parser.add_argument("--port", type=int, help=f"Listening port (default: $PORT or {config.DEFAULT_PORT})")
    parser.add_argument("--workdir", help="Checkout directory (default: repository name)")
    parser.add_argument("--config-file", help=f"Configuration file in the repository (default: {config.CONFIG_FILE})")
    return parser.parse_args(argv)


def main(argv=None):
    logging.basicConfig(level=config.LOG_LEVEL, format=config.LOG_FORMAT)
    args = parse_args(argv)

    try:
        settings = DaemonSettings.from_env(
            git_url=args.git_url,
            webhook_secret=args.webhook_secret,
            host=args.host,
            port=args.port,
            workdir=args.workdir,
            config_file=args.config_file,
        )
    except SettingsError as e:
        logger.error(str(e))
        sys.exit(1)

    orchestrator = DeploymentOrchestrator(settings.git_url, settings.workdir, settings.config_file)
    app = create_app(settings.webhook_secret, orchestrator)

    orchestrator.start()
    orchestrator.submit(orchestrator.bootstrap)

    logger.info(f"Server listening on port {settings.port}")
    try:
        app.run(host=settings.host, port=settings.port, use_reloader=False)
    except KeyboardInterrupt:
        logger.info("Shutting down")
    finally:
        orchestrator.shutdown(timeout=config.STOP_GRACE_PERIOD)


if __name__ == "__main__":
    main()
