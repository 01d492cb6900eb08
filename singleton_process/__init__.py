__version__ = "0.1.0"

from .errors import (
    SingletonError,
    PersisterError,
    ConfigurationError,
)
from .config import (
    SingletonOptions,
    SingletonConfig,
    load_config,
)
from .persistence import (
    LockRecord,
    PersistResult,
    LockPersister,
    MemoryPersister,
    SQLitePersister,
    LocalFilePersister,
    create_persister,
)
from .singleton import (
    LockEvent,
    LockNotification,
    Singleton,
)
from .shutdown import ShutdownCoordinator
from .subscribers import (
    attach,
    LoggingSubscriber,
    MetricsSubscriber,
    WebhookSubscriber,
)
from .monitoring import (
    setup_logging,
    get_logger,
    get_meter,
)

__all__ = [
    "__version__",
    # Lock controller
    "Singleton",
    "LockEvent",
    "LockNotification",
    # Persisters
    "LockRecord",
    "PersistResult",
    "LockPersister",
    "MemoryPersister",
    "SQLitePersister",
    "LocalFilePersister",
    "create_persister",
    # Configuration
    "SingletonOptions",
    "SingletonConfig",
    "load_config",
    # Signals
    "ShutdownCoordinator",
    # Subscribers
    "attach",
    "LoggingSubscriber",
    "MetricsSubscriber",
    "WebhookSubscriber",
    # Errors
    "SingletonError",
    "PersisterError",
    "ConfigurationError",
    # Monitoring & Observability
    "setup_logging",
    "get_logger",
    "get_meter",
]
