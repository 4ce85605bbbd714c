from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import override

from pydantic import BaseModel, Field, field_serializer, field_validator

CRYPTO_LUKS = 'crypto_LUKS'


class Unit(Enum):
	B = 1  # byte
	kB = 1000**1  # kilobyte
	MB = 1000**2  # megabyte
	GB = 1000**3  # gigabyte
	TB = 1000**4  # terabyte

	KiB = 1024**1  # kibibyte
	MiB = 1024**2  # mebibyte
	GiB = 1024**3  # gibibyte
	TiB = 1024**4  # tebibyte
	PiB = 1024**5  # pebibyte

	@staticmethod
	def get_binary_units() -> list[Unit]:
		return [u for u in Unit if 'i' in u.name or u.name == 'B']

	@classmethod
	def from_text(cls, text: str) -> Unit:
		shorthand = {'K': cls.KiB, 'M': cls.MiB, 'G': cls.GiB, 'T': cls.TiB, 'P': cls.PiB}

		if text in shorthand:
			return shorthand[text]

		try:
			return cls[text]
		except KeyError:
			raise ValueError(f'Unknown size unit: {text}')


_SIZE_REGEX = re.compile(r'^\s*(\d+(?:\.\d+)?)\s*([A-Za-z]*)\s*$')


@dataclass(frozen=True)
class Size:
	value: int
	unit: Unit

	@classmethod
	def parse(cls, size: str | int) -> Size:
		"""
		Parses "1GiB", "512 MiB", "32G" or a plain number of bytes.
		"""
		if isinstance(size, int):
			return Size(size, Unit.B)

		match = _SIZE_REGEX.match(size)
		if not match:
			raise ValueError(f'Invalid size: {size!r}')

		number, unit_text = match.groups()
		unit = Unit.from_text(unit_text) if unit_text else Unit.B

		if '.' in number:
			return Size(int(float(number) * unit.value), Unit.B)

		return Size(int(number), unit)

	def convert(self, target_unit: Unit) -> Size:
		if self.unit == target_unit:
			return self

		value = int(self._normalize() / target_unit.value)
		return Size(value, target_unit)

	def as_text(self) -> str:
		return f'{self.value} {self.unit.name}'

	def binary_unit_highest(self, include_unit: bool = True) -> str:
		binary_units = Unit.get_binary_units()

		size = float(self._normalize())
		unit = Unit.KiB
		base_value = unit.value

		for binary_unit in binary_units:
			unit = binary_unit
			if size < base_value:
				break
			size /= base_value

		formatted_size = f'{size:.1f}'

		if formatted_size.endswith('.0'):
			formatted_size = formatted_size[:-2]

		if not include_unit:
			return formatted_size

		return f'{formatted_size} {unit.name}'

	def is_mib_aligned(self) -> bool:
		return self._normalize() % Unit.MiB.value == 0

	def to_bytes(self) -> int:
		return self._normalize()

	def to_mib(self) -> int:
		return self._normalize() // Unit.MiB.value

	def _normalize(self) -> int:
		"""
		will normalize the value of the unit to Byte
		"""
		return int(self.value * self.unit.value)

	def __sub__(self, other: Size) -> Size:
		return Size(abs(self._normalize() - other._normalize()), Unit.B)

	def __add__(self, other: Size) -> Size:
		return Size(self._normalize() + other._normalize(), Unit.B)

	def __lt__(self, other: Size) -> bool:
		return self._normalize() < other._normalize()

	def __le__(self, other: Size) -> bool:
		return self._normalize() <= other._normalize()

	@override
	def __eq__(self, other: object) -> bool:
		if not isinstance(other, Size):
			return NotImplemented

		return self._normalize() == other._normalize()

	@override
	def __ne__(self, other: object) -> bool:
		if not isinstance(other, Size):
			return NotImplemented

		return self._normalize() != other._normalize()

	def __gt__(self, other: Size) -> bool:
		return self._normalize() > other._normalize()

	def __ge__(self, other: Size) -> bool:
		return self._normalize() >= other._normalize()

	@override
	def __hash__(self) -> int:
		return hash(self._normalize())


class FilesystemType(Enum):
	Vfat = 'vfat'
	Btrfs = 'btrfs'
	Swap = 'swap'

	@property
	def parted_value(self) -> str:
		match self:
			case FilesystemType.Vfat:
				return 'fat32'
			case FilesystemType.Swap:
				return 'linux-swap'
			case _:
				return self.value

	@property
	def blkid_value(self) -> str:
		return self.value

	@property
	def fs_type_mount(self) -> str:
		return self.value

	@property
	def installation_binary(self) -> str:
		match self:
			case FilesystemType.Vfat:
				return 'mkfs.fat'
			case FilesystemType.Btrfs:
				return 'mkfs.btrfs'
			case FilesystemType.Swap:
				return 'mkswap'


class LsblkInfo(BaseModel):
	name: str
	path: Path
	pkname: str | None = None
	size: Size
	type: str | None = None
	fstype: str | None = None
	uuid: str | None = None
	partuuid: str | None = None
	partlabel: str | None = None
	mountpoints: list[Path] = Field(default_factory=list)
	children: list[LsblkInfo] = Field(default_factory=list)

	@field_validator('size', mode='before')
	@classmethod
	def convert_size(cls, v: int | Size) -> Size:
		if isinstance(v, Size):
			return v
		return Size(v, Unit.B)

	@field_validator('mountpoints', mode='before')
	@classmethod
	def remove_none(cls, v: list[Path | None] | None) -> list[Path]:
		return [item for item in v or [] if item is not None]

	@field_serializer('size', when_used='json')
	def serialize_size(self, size: Size) -> str:
		return size.binary_unit_highest()

	@classmethod
	def fields(cls) -> list[str]:
		return [name for name in cls.model_fields if name != 'children']

	def all_mountpoints(self) -> list[Path]:
		mountpoints = list(self.mountpoints)

		for child in self.children:
			mountpoints += child.all_mountpoints()

		return mountpoints


class MountInfo(BaseModel):
	"""
	A single entry of the live mount table as reported by findmnt.
	"""
	source: str
	target: Path
	fstype: str
	options: list[str] = Field(default_factory=list)
	fsroot: str = '/'

	@field_validator('options', mode='before')
	@classmethod
	def split_options(cls, v: str | list[str] | None) -> list[str]:
		if v is None:
			return []
		if isinstance(v, str):
			return [o for o in v.split(',') if o]
		return v

	@field_validator('source', mode='before')
	@classmethod
	def strip_fsroot(cls, v: str) -> str:
		# findmnt shows btrfs subvolume mounts as "/dev/sda2[/@home]"
		return v.split('[', 1)[0]

	@property
	def subvolume(self) -> str | None:
		if self.fstype != 'btrfs' or self.fsroot in ('', '/'):
			return None
		return self.fsroot.lstrip('/')


class FindmntOutput(BaseModel):
	filesystems: list[MountInfo] = Field(default_factory=list)
