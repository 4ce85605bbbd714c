from .memory import InMemoryDeviceOperations
from .operations import MUTATING_OPERATIONS, DeviceOperations
from .system import SystemDeviceOperations
from .utils import disk_layouts, get_lsblk_info, get_mounts, partition_path

__all__ = [
	'MUTATING_OPERATIONS',
	'DeviceOperations',
	'InMemoryDeviceOperations',
	'SystemDeviceOperations',
	'disk_layouts',
	'get_lsblk_info',
	'get_mounts',
	'partition_path',
]
