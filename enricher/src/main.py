import asyncio
import contextlib
import signal
import sys
from pathlib import Path
from typing import Optional

from loguru import logger

from .config import Settings, load_settings
from .connectors import LLMConnector, PaperlessConnector
from .errors import ConfigurationError
from .processing import CatalogCaches, DocumentAnalyzer, DocumentProcessor, StateManager
from .services import ExternalDataService, SchedulerCoordinator, ServiceBootstrapper, WebhookQueue


def setup_logging(settings: Settings):
    """Configure application logging."""
    for path in (settings.log_file, settings.prompt_log_file):
        with contextlib.suppress(OSError):
            Path(path).parent.mkdir(parents=True, exist_ok=True)

    _ = logger.add(
        settings.log_file,
        rotation="10 MB",
        retention="10 days",
        enqueue=True,
        backtrace=True,
        diagnose=True,
        filter=lambda record: record["extra"].get("channel") != "prompt",
    )
    _ = logger.add(
        settings.prompt_log_file,
        rotation="10 MB",
        retention=3,
        enqueue=True,
        filter=lambda record: record["extra"].get("channel") == "prompt",
    )


class Application:
    """Wires connectors, caches, the pipeline and both producers together."""

    def __init__(
        self,
        settings: Settings,
        paperless_connector: Optional[PaperlessConnector] = None,
        llm_connector: Optional[LLMConnector] = None,
    ):
        self.settings = settings
        self.paperless_connector = paperless_connector or PaperlessConnector(settings)
        self.llm_connector = llm_connector or LLMConnector(settings)
        self.caches = CatalogCaches(self.paperless_connector, settings)
        self.document_processor = DocumentProcessor(
            settings,
            self.paperless_connector,
            DocumentAnalyzer(settings, self.llm_connector),
            self.caches,
            StateManager(settings.state_path),
            external_data=ExternalDataService(settings),
        )
        self.webhook_queue = WebhookQueue(self.document_processor)
        self.scheduler_coordinator = SchedulerCoordinator(
            self.document_processor,
            settings.schedule_time,
            enabled=not settings.disable_automatic_processing,
        )

    def setup_signal_handlers(self):
        """Setup signal handlers for graceful shutdown."""
        loop = asyncio.get_running_loop()

        def handle_signal(signum):
            logger.info(f"Received signal {signum}; requesting shutdown...")
            self.scheduler_coordinator.request_stop()

        for sig in (getattr(signal, "SIGINT", None), getattr(signal, "SIGTERM", None)):
            if sig is not None:
                with contextlib.suppress(NotImplementedError):
                    loop.add_signal_handler(sig, handle_signal, sig)

    async def run(self):
        """Bootstrap, run the initial scan, then keep scanning on schedule."""
        self.setup_signal_handlers()
        try:
            await ServiceBootstrapper.bootstrap_all_services(self.settings, self.paperless_connector)
            await self.scheduler_coordinator.run_initial_process()
            await self.scheduler_coordinator.start_scheduler()
            await self.webhook_queue.join()
        finally:
            await self.paperless_connector.aclose()


def main():
    """Main entry point."""
    try:
        settings = load_settings()
        settings.validate_provider()
    except ConfigurationError as exc:
        logger.critical(f"Configuration error: {exc}")
        sys.exit(2)

    setup_logging(settings)

    try:
        asyncio.run(Application(settings).run())
    except KeyboardInterrupt:
        logger.info("Interrupted.")
        sys.exit(130)
    except Exception as e:
        logger.critical(f"Fatal error: {e}")
        sys.exit(1)
    finally:
        logger.info("Enricher stopped.")


if __name__ == "__main__":
    main()
