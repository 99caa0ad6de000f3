import logging

from django.apps import AppConfig
from django.core.exceptions import ImproperlyConfigured

logger = logging.getLogger(__name__)


class OfflineSyncConfig(AppConfig):
    name = 'offline_sync'
    default_auto_field = 'django.db.models.BigAutoField'

    def ready(self):
        """
        Run when Django app is ready.

        Validates the OFFLINE_SYNC setting so a typo fails at startup
        rather than on the first sync pass.
        """
        # Import here to avoid circular imports
        from offline_sync.sync.config import SyncConfig

        try:
            config = SyncConfig.from_settings()
        except (TypeError, ValueError) as e:
            raise ImproperlyConfigured(f"Invalid OFFLINE_SYNC setting: {e}") from e

        if not config.remote_store:
            logger.warning("OFFLINE_SYNC['REMOTE_STORE'] is not set; sync tasks will fail")
        else:
            logger.debug(
                f"Offline sync configured: strategy={config.conflict_strategy.value}, "
                f"interval={config.sync_interval}s, max_operations={config.max_operations}"
            )
