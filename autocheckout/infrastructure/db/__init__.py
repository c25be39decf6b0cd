"""Database infrastructure package."""

from autocheckout.infrastructure.db.models import (
    AutoCheckoutConfigDB,
    AutoCheckoutDB,
    Base,
    NotificationDB,
    ParkingDB,
    SensorEventDB,
    TicketDB,
    UserDB,
)
from autocheckout.infrastructure.db.repository import (
    SqlCheckoutStore,
    SqlNotificationSink,
    SqlParkingInventory,
    SqlSensorEventLog,
    SqlTicketStore,
    SqlZoneConfigStore,
)
from autocheckout.infrastructure.db.session import (
    close_db,
    create_test_engine,
    get_engine,
    get_session_factory,
    init_db,
    make_session_factory,
)

__all__ = [
    # Models
    "Base",
    "ParkingDB",
    "UserDB",
    "TicketDB",
    "AutoCheckoutConfigDB",
    "AutoCheckoutDB",
    "NotificationDB",
    "SensorEventDB",
    # Repositories
    "SqlTicketStore",
    "SqlParkingInventory",
    "SqlZoneConfigStore",
    "SqlCheckoutStore",
    "SqlNotificationSink",
    "SqlSensorEventLog",
    # Session
    "get_engine",
    "get_session_factory",
    "make_session_factory",
    "create_test_engine",
    "init_db",
    "close_db",
]
