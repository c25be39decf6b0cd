"""
In-memory registry of lots with auto-checkout enabled.
"""

from autocheckout.application.ports import ZoneConfigStore
from autocheckout.core.logging import get_logger
from autocheckout.domain.errors import PersistenceError
from autocheckout.domain.models import ZoneConfig, ZoneMethod

logger = get_logger(__name__)


class ZoneRegistry:
    """
    Zone configuration keyed by parking id.

    Loaded from the config store at startup and on explicit reload.
    A load failure leaves the previous map in place, which is empty at
    startup: auto-checkout is then simply off for those lots.

    Example:
        registry = ZoneRegistry(store)
        await registry.load()
        config = registry.find_by_method("P1", {ZoneMethod.GEOLOCATION, ZoneMethod.HYBRID})
    """

    def __init__(self, store: ZoneConfigStore):
        self._store = store
        self._zones: dict[str, ZoneConfig] = {}

    def __len__(self) -> int:
        return len(self._zones)

    async def load(self) -> int:
        """
        Replace the in-memory map with the enabled zones from storage.

        Returns:
            int: Number of zones now registered.
        """
        try:
            configs = await self._store.load_enabled_zones()
        except PersistenceError as e:
            logger.error("zones_load_failed", error=str(e), kept=len(self._zones))
            return len(self._zones)

        # Swap in a fresh dict so readers never see a half-built map
        self._zones = {config.parking_id: config for config in configs}
        logger.info("zones_loaded", count=len(self._zones))
        return len(self._zones)

    def get(self, parking_id: str) -> ZoneConfig | None:
        return self._zones.get(parking_id)

    def find_by_method(
        self,
        parking_id: str,
        methods: set[ZoneMethod] | frozenset[ZoneMethod],
    ) -> ZoneConfig | None:
        """Zone of the lot, only if its method is one of ``methods``."""
        config = self._zones.get(parking_id)
        if config is None or config.method not in methods:
            return None
        return config

    def find_by_sensor(self, sensor_id: str) -> ZoneConfig | None:
        """
        Lot owning a sensor.

        Only sensor-capable zones (sensor or hybrid) are considered.
        """
        for config in self._zones.values():
            if config.method.accepts_sensor and config.has_sensor(sensor_id):
                return config
        return None

    def all(self) -> list[ZoneConfig]:
        return list(self._zones.values())
