from __future__ import annotations

import re
from enum import Enum
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator

from .device import FilesystemType, Size

REMAINDER = 'remainder'

_MAPPER_NAME = re.compile(r'^[A-Za-z0-9_.-]+$')
_BTRFS_CHECKSUMS = ('crc32c', 'xxhash', 'sha256', 'blake2')


class DiskRole(Enum):
	Root = 'root'
	Workspace = 'workspace'
	Home = 'home'
	Swap = 'swap'
	Cache = 'cache'
	Bulk = 'bulk'


class PartitionRole(Enum):
	Boot = 'boot'
	Root = 'root'
	Home = 'home'
	Workspace = 'workspace'
	Swap = 'swap'
	Cache = 'cache'
	Data = 'data'


class _PlanModel(BaseModel):
	model_config = ConfigDict(frozen=True, extra='forbid')


class BtrfsFeatures(_PlanModel):
	checksum: str = 'xxhash'
	nodesize: int | None = None
	features: list[str] = Field(default_factory=lambda: ['skinny-metadata', 'no-holes'])
	mount_options: list[str] = Field(default_factory=lambda: ['noatime', 'compress=zstd:1', 'space_cache=v2'])

	@field_validator('checksum')
	@classmethod
	def check_checksum(cls, v: str) -> str:
		if v not in _BTRFS_CHECKSUMS:
			raise ValueError(f'Unsupported btrfs checksum "{v}", expected one of {", ".join(_BTRFS_CHECKSUMS)}')
		return v

	@field_validator('nodesize')
	@classmethod
	def check_nodesize(cls, v: int | None) -> int | None:
		if v is None:
			return v

		if v < 4096 or v > 65536 or v & (v - 1):
			raise ValueError(f'btrfs node size must be a power of two between 4096 and 65536, got {v}')
		return v


class EncryptionSpec(_PlanModel):
	"""
	LUKS2 container wrapping the enclosing partition. The passphrase
	is requested at runtime and never part of the plan.
	"""
	mapper_name: str
	cipher: str = 'aes-xts-plain64'
	key_size: int = 512
	hash: str = 'sha256'
	pbkdf: str = 'argon2id'

	@field_validator('mapper_name')
	@classmethod
	def check_mapper_name(cls, v: str) -> str:
		if not _MAPPER_NAME.match(v):
			raise ValueError(f'Invalid mapper name "{v}"')
		return v

	@field_validator('key_size')
	@classmethod
	def check_key_size(cls, v: int) -> int:
		if v not in (256, 512):
			raise ValueError(f'LUKS key size must be 256 or 512, got {v}')
		return v

	@property
	def mapper_path(self) -> Path:
		return Path('/dev/mapper') / self.mapper_name


class PartitionSpec(_PlanModel):
	label: str
	fs_type: FilesystemType
	# None means the partition takes the remainder of the disk
	size: Size | None
	start: Size | None = None
	role: PartitionRole = PartitionRole.Data
	encryption: EncryptionSpec | None = None
	btrfs: BtrfsFeatures | None = None
	optional: bool = False

	@field_validator('size', 'start', mode='before')
	@classmethod
	def parse_size(cls, v: Any) -> Size | None:
		if v is None or v == REMAINDER:
			return None
		if isinstance(v, Size):
			return v
		return Size.parse(v)

	@field_serializer('size', 'start')
	def serialize_size(self, size: Size | None) -> str | None:
		if size is None:
			return None
		return size.as_text()

	@property
	def is_esp(self) -> bool:
		return self.role == PartitionRole.Boot

	@property
	def is_encrypted(self) -> bool:
		return self.encryption is not None

	@property
	def is_remainder(self) -> bool:
		return self.size is None

	def btrfs_features(self) -> BtrfsFeatures:
		return self.btrfs or BtrfsFeatures()

	def table_data(self) -> dict[str, Any]:
		return {
			'label': self.label,
			'fs_type': self.fs_type.value,
			'size': self.size.binary_unit_highest() if self.size else REMAINDER,
			'role': self.role.value,
			'encrypted': self.encryption.mapper_name if self.encryption else '',
		}


class DiskSpec(_PlanModel):
	device: Path
	role: DiskRole
	table: Literal['gpt'] = 'gpt'
	partitions: list[PartitionSpec] = Field(min_length=1)


class SubvolumeSpec(_PlanModel):
	filesystem: str
	name: str
	mountpoint: Path | None = None
	mount_options: list[str] = Field(default_factory=list)
	optional: bool = False

	@field_validator('name')
	@classmethod
	def check_name(cls, v: str) -> str:
		if not v or v.startswith('/') or '/' in v.rstrip('/'):
			raise ValueError(f'Subvolume name "{v}" must be a single top level path component')
		return v

	@property
	def nodatacow(self) -> bool:
		return 'nodatacow' in self.mount_options


class MountPlanEntry(_PlanModel):
	partition: str
	subvolume: str | None = None
	mountpoint: Path | None = None
	options: list[str] = Field(default_factory=list)
	dump: int = 0
	passno: int | None = None
	optional: bool = False

	@property
	def key(self) -> str:
		if self.mountpoint is not None:
			return str(self.mountpoint)
		return f'swap:{self.partition}'


class CacheDirectory(_PlanModel):
	name: str
	path: Path
	environment: dict[str, str] = Field(default_factory=dict)
	mode: str = '0755'
	user: str = 'root'
	group: str = 'root'


class ProvisionPlan(_PlanModel):
	disks: list[DiskSpec]
	subvolumes: list[SubvolumeSpec] = Field(default_factory=list)
	mounts: list[MountPlanEntry] = Field(default_factory=list)
	caches: list[CacheDirectory] = Field(default_factory=list)

	def partitions(self) -> list[tuple[DiskSpec, int, PartitionSpec]]:
		"""
		Every partition with its disk and 1-based partition number.
		"""
		return [(disk, nr, part) for disk in self.disks for nr, part in enumerate(disk.partitions, start=1)]

	def partition(self, label: str) -> PartitionSpec | None:
		for _, _, part in self.partitions():
			if part.label == label:
				return part
		return None

	def locate(self, label: str) -> tuple[DiskSpec, int] | None:
		for disk, nr, part in self.partitions():
			if part.label == label:
				return disk, nr
		return None

	def subvolumes_of(self, label: str) -> list[SubvolumeSpec]:
		return [s for s in self.subvolumes if s.filesystem == label]

	def subvolume(self, label: str, name: str) -> SubvolumeSpec | None:
		for subvol in self.subvolumes_of(label):
			if subvol.name == name:
				return subvol
		return None

	def resolved_mounts(self) -> list[MountPlanEntry]:
		"""
		Explicit mount entries followed by entries implied by subvolumes
		that declare a mount point of their own.
		"""
		mounts = list(self.mounts)
		covered = {(m.partition, m.subvolume) for m in mounts}

		for subvol in self.subvolumes:
			if subvol.mountpoint is None or (subvol.filesystem, subvol.name) in covered:
				continue

			mounts.append(
				MountPlanEntry(
					partition=subvol.filesystem,
					subvolume=subvol.name,
					mountpoint=subvol.mountpoint,
					optional=subvol.optional,
				)
			)

		return mounts

	def mount_options(self, entry: MountPlanEntry) -> list[str]:
		"""
		Effective options of a mount: the filesystem defaults, the
		subvolume options, the entry options and finally subvol=.
		"""
		part = self.partition(entry.partition)
		options: list[str] = []

		if part is not None and part.fs_type == FilesystemType.Btrfs:
			options += part.btrfs_features().mount_options

			if entry.subvolume:
				if subvol := self.subvolume(part.label, entry.subvolume):
					options += subvol.mount_options

		options += entry.options

		if entry.subvolume:
			options.append(f'subvol={entry.subvolume}')

		if not options:
			return ['defaults']

		# a later compress=zstd:3 replaces an earlier compress=zstd:1
		merged: dict[str, str] = {}
		for option in options:
			merged[option.split('=', 1)[0]] = option

		return list(merged.values())

	def passno(self, entry: MountPlanEntry) -> int:
		if entry.passno is not None:
			return entry.passno

		part = self.partition(entry.partition)

		if entry.mountpoint is None or (part and part.fs_type == FilesystemType.Swap):
			return 0
		if entry.mountpoint == Path('/'):
			return 1
		if part and part.fs_type == FilesystemType.Btrfs:
			# btrfs has no fsck pass
			return 0
		return 2

	def encrypted_partitions(self) -> list[PartitionSpec]:
		return [p for _, _, p in self.partitions() if p.encryption is not None]

	def devices(self) -> list[Path]:
		return [disk.device for disk in self.disks]
