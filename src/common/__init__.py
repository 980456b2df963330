from common.clock import Clock, ManualClock, SystemClock
from common.ids import generate_id
from common.jsonio import load_json, atomic_write_json
from common.storage import JsonFileStorage, MemoryStorage, Storage

__all__ = [
    "Clock",
    "ManualClock",
    "SystemClock",
    "generate_id",
    "load_json",
    "atomic_write_json",
    "JsonFileStorage",
    "MemoryStorage",
    "Storage",
]
