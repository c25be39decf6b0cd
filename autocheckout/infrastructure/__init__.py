"""Infrastructure layer package."""

from autocheckout.infrastructure.db import (
    SqlCheckoutStore,
    SqlNotificationSink,
    SqlParkingInventory,
    SqlSensorEventLog,
    SqlTicketStore,
    SqlZoneConfigStore,
    close_db,
    get_session_factory,
    init_db,
)

__all__ = [
    # Database
    "get_session_factory",
    "init_db",
    "close_db",
    # Repositories
    "SqlTicketStore",
    "SqlParkingInventory",
    "SqlZoneConfigStore",
    "SqlCheckoutStore",
    "SqlNotificationSink",
    "SqlSensorEventLog",
]
