import logging
import sys

from django.apps import AppConfig

logger = logging.getLogger(__name__)

# Long-running processes that need the engines and queue wired at start
SERVICE_PROCESSES = ("runserver", "worker", "beat")


class RelayConfig(AppConfig):
    name = "relay"
    default_auto_field = "django.db.models.BigAutoField"

    def ready(self):
        """
        Run when Django app is ready.

        Builds the provider factory, queue and engines once for server and
        Celery processes. Other commands build them lazily on first use.
        """
        if not any(arg in SERVICE_PROCESSES for arg in sys.argv):
            return

        from relay.services import get_services

        try:
            services = get_services()
            logger.info(
                f"Relay ready with providers: {', '.join(services.factory.list_supported())}"
            )
        except Exception as e:
            # Don't crash the process; the first task will retry the build
            logger.error(f"Relay service initialization failed: {e}", exc_info=True)
