from __future__ import annotations

from abc import ABCMeta, abstractmethod
from pathlib import Path

from ..models.device import FilesystemType, MountInfo, Size
from ..models.plan import BtrfsFeatures, EncryptionSpec

# names of the operations that change on-disk or mount state
MUTATING_OPERATIONS = frozenset(
	{
		'wipe_signatures',
		'create_partition_table',
		'create_partition',
		'set_esp',
		'luks_format',
		'luks_open',
		'luks_close',
		'mkfs',
		'create_subvolume',
		'set_nocow',
		'mount',
		'umount',
		'swapon',
		'make_directory',
		'move',
	}
)


class DeviceOperations(metaclass=ABCMeta):
	"""
	Every interaction with block devices, mappings and mounts goes
	through this interface. The executor, verifier and recovery helper
	never run external commands themselves.
	"""

	@abstractmethod
	def block_device_exists(self, path: Path) -> bool:
		pass

	@abstractmethod
	def device_size(self, path: Path) -> Size:
		pass

	@abstractmethod
	def is_mounted(self, device: Path) -> bool:
		"""
		True if the device or anything stacked on it is mounted or used as swap.
		"""
		pass

	@abstractmethod
	def is_luks(self, path: Path) -> bool:
		pass

	@abstractmethod
	def is_mapper_open(self, mapper_name: str) -> bool:
		pass

	@abstractmethod
	def mapper_backing_device(self, mapper_name: str) -> Path | None:
		"""
		The partition an open mapping decrypts, None if it is not open.
		"""
		pass

	@abstractmethod
	def get_uuid(self, path: Path) -> str | None:
		pass

	@abstractmethod
	def get_fstype(self, path: Path) -> str | None:
		pass

	@abstractmethod
	def list_mounts(self) -> list[MountInfo]:
		pass

	@abstractmethod
	def list_swaps(self) -> list[Path]:
		pass

	@abstractmethod
	def list_subvolumes(self, mountpoint: Path) -> list[str]:
		pass

	@abstractmethod
	def is_directory(self, path: Path) -> bool:
		pass

	@abstractmethod
	def list_directory(self, path: Path) -> list[str]:
		pass

	@abstractmethod
	def wipe_signatures(self, device: Path) -> None:
		pass

	@abstractmethod
	def create_partition_table(self, device: Path, table: str) -> None:
		pass

	@abstractmethod
	def create_partition(self, device: Path, label: str, fs_type: FilesystemType, start: Size, end: Size) -> None:
		pass

	@abstractmethod
	def set_esp(self, device: Path, number: int) -> None:
		pass

	@abstractmethod
	def reread_partitions(self, device: Path) -> None:
		pass

	@abstractmethod
	def luks_format(self, partition: Path, spec: EncryptionSpec, passphrase: str) -> None:
		pass

	@abstractmethod
	def luks_open(self, partition: Path, mapper_name: str, passphrase: str) -> Path:
		pass

	@abstractmethod
	def luks_close(self, mapper_name: str) -> None:
		pass

	@abstractmethod
	def mkfs(self, path: Path, fs_type: FilesystemType, label: str, features: BtrfsFeatures | None = None) -> None:
		pass

	@abstractmethod
	def create_subvolume(self, mountpoint: Path, name: str) -> None:
		pass

	@abstractmethod
	def set_nocow(self, path: Path) -> None:
		pass

	@abstractmethod
	def mount(self, source: Path, target: Path, fstype: str | None = None, options: list[str] | None = None) -> None:
		pass

	@abstractmethod
	def umount(self, target: Path) -> None:
		pass

	@abstractmethod
	def swapon(self, path: Path) -> None:
		pass

	@abstractmethod
	def make_directory(self, path: Path, owner: str | None = None) -> None:
		pass

	@abstractmethod
	def move(self, source: Path, destination: Path) -> None:
		pass

	def mount_at(self, target: Path) -> MountInfo | None:
		for mount in reversed(self.list_mounts()):
			if mount.target == target:
				return mount
		return None
