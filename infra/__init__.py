"""Infrastructure modules for vaultpilot"""

from .alerting import AlertService, AlertSeverity  # noqa: F401
from .metrics import MetricsRecorder, CycleStats  # noqa: F401
from .kv_store import KeyValueStore, InMemoryKeyValueStore, RedisKeyValueStore  # noqa: F401

__all__ = [
	"AlertService",
	"AlertSeverity",
	"MetricsRecorder",
	"CycleStats",
	"KeyValueStore",
	"InMemoryKeyValueStore",
	"RedisKeyValueStore",
]
