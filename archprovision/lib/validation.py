from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path

from pydantic import ValidationError

from .disk.operations import DeviceOperations
from .disk.utils import partition_path
from .exceptions import InvalidPlanError
from .models.device import FilesystemType, Size, Unit
from .models.plan import DiskSpec, MountPlanEntry, PartitionSpec, ProvisionPlan
from .output import debug

# first usable offset and the space kept free for the backup GPT header
ALIGNMENT = Size(1, Unit.MiB)
GPT_TAIL = Size(1, Unit.MiB)

VFAT_LABEL_MAX = 11

_ENV_NAME = re.compile(r'^[A-Za-z_][A-Za-z0-9_]*$')


@dataclass(frozen=True)
class PartitionExtent:
	disk: DiskSpec
	number: int
	spec: PartitionSpec
	start: Size
	end: Size

	@property
	def path(self) -> Path:
		return partition_path(self.disk.device, self.number)

	@property
	def size(self) -> Size:
		return self.end - self.start

	def table_data(self) -> dict[str, str | int]:
		return {
			'device': str(self.path),
			'label': self.spec.label,
			'fs_type': self.spec.fs_type.value,
			'start': f'{self.start.to_mib()} MiB',
			'end': f'{self.end.to_mib()} MiB',
			'size': self.size.binary_unit_highest(),
		}


PlanLayout = dict[Path, list[PartitionExtent]]


def compute_layout(disk: DiskSpec, capacity: Size | None) -> tuple[list[PartitionExtent], list[str]]:
	"""
	Places the partitions of a disk one after the other, starting at
	1 MiB and leaving 1 MiB at the end for the backup GPT header.
	Without a capacity only the relative placement is checked.
	"""
	problems: list[str] = []
	extents: list[PartitionExtent] = []

	usable_end: Size | None = None
	if capacity is not None:
		usable_end = Size(capacity.to_mib(), Unit.MiB) - GPT_TAIL

	cursor = ALIGNMENT
	previous: PartitionSpec | None = None

	for number, part in enumerate(disk.partitions, start=1):
		start = part.start if part.start is not None else cursor
		last = number == len(disk.partitions)

		if not start.is_mib_aligned():
			problems.append(f'{disk.device}: start of partition {part.label} is not aligned to 1 MiB')
		if start < ALIGNMENT:
			problems.append(f'{disk.device}: partition {part.label} starts inside the partition table')
		elif start < cursor and previous is not None:
			problems.append(f'{disk.device}: partition {part.label} overlaps partition {previous.label}')

		if part.size is None:
			if not last:
				problems.append(f'{disk.device}: only the last partition may use the remainder, {part.label} is not last')
				end = start
			elif usable_end is not None:
				end = usable_end
			else:
				end = start
		else:
			if part.size.to_bytes() <= 0:
				problems.append(f'{disk.device}: partition {part.label} has no size')
			elif not part.size.is_mib_aligned():
				problems.append(f'{disk.device}: size of partition {part.label} is not a whole number of MiB')
			end = start + part.size

		if usable_end is not None:
			if end > usable_end:
				available = (usable_end - ALIGNMENT).binary_unit_highest()
				problems.append(f'{disk.device}: partition {part.label} exceeds the capacity of the device ({available} usable)')
			elif part.size is None and last and end <= start:
				problems.append(f'{disk.device}: no space left for remainder partition {part.label}')

		extents.append(PartitionExtent(disk, number, part, start, end))

		if end > cursor:
			cursor = end
		previous = part

	return extents, problems


def _check_devices(plan: ProvisionPlan, ops: DeviceOperations) -> tuple[PlanLayout, list[str]]:
	problems: list[str] = []
	layout: PlanLayout = {}
	seen: set[Path] = set()

	for disk in plan.disks:
		if disk.device in seen:
			problems.append(f'Device {disk.device} is declared more than once')
			continue

		seen.add(disk.device)
		capacity: Size | None = None

		if ops.block_device_exists(disk.device):
			capacity = ops.device_size(disk.device)
		else:
			problems.append(f'Device {disk.device} does not exist or is not a block device')

		extents, layout_problems = compute_layout(disk, capacity)
		layout[disk.device] = extents
		problems += layout_problems

	return layout, problems


def _check_partitions(plan: ProvisionPlan) -> list[str]:
	problems: list[str] = []
	labels: set[str] = set()
	mappers: set[str] = set()
	esps: list[PartitionSpec] = []

	for disk, _, part in plan.partitions():
		if part.label in labels:
			problems.append(f'Partition label {part.label} is used more than once')
		labels.add(part.label)

		if part.encryption is not None:
			if part.encryption.mapper_name in mappers:
				problems.append(f'Mapper name {part.encryption.mapper_name} is used more than once')
			mappers.add(part.encryption.mapper_name)

		if part.is_esp:
			esps.append(part)

			if part.fs_type != FilesystemType.Vfat:
				problems.append(f'EFI system partition {part.label} must be vfat, not {part.fs_type.value}')
			if part.is_encrypted:
				problems.append(f'EFI system partition {part.label} can not be encrypted')

		if part.fs_type == FilesystemType.Vfat and len(part.label) > VFAT_LABEL_MAX:
			problems.append(f'vfat label {part.label} is longer than {VFAT_LABEL_MAX} characters')

		if part.btrfs is not None and part.fs_type != FilesystemType.Btrfs:
			problems.append(f'Partition {part.label} declares btrfs features but is {part.fs_type.value}')

	if len(esps) > 1:
		problems.append(f'Only one EFI system partition is allowed, found: {", ".join(p.label for p in esps)}')

	return problems


def _check_subvolumes(plan: ProvisionPlan) -> list[str]:
	problems: list[str] = []
	seen: set[tuple[str, str]] = set()

	for subvol in plan.subvolumes:
		part = plan.partition(subvol.filesystem)

		if part is None:
			problems.append(f'Subvolume {subvol.name} refers to unknown partition {subvol.filesystem}')
			continue

		if part.fs_type != FilesystemType.Btrfs:
			problems.append(
				f'Subvolume {subvol.name} is declared on {subvol.filesystem} which is {part.fs_type.value}, subvolumes require btrfs'
			)

		if (subvol.filesystem, subvol.name) in seen:
			problems.append(f'Subvolume {subvol.name} is declared more than once on {subvol.filesystem}')
		seen.add((subvol.filesystem, subvol.name))

	return problems


def _nearest_parent(entry: MountPlanEntry, entries: list[MountPlanEntry]) -> MountPlanEntry | None:
	if entry.mountpoint is None:
		return None

	parents = [e for e in entries if e.mountpoint is not None and e.mountpoint in entry.mountpoint.parents]

	if not parents:
		return None

	return max(parents, key=lambda e: len(e.mountpoint.parts) if e.mountpoint else 0)


def _check_mounts(plan: ProvisionPlan) -> list[str]:
	problems: list[str] = []
	entries = plan.resolved_mounts()
	mountpoints: set[Path] = set()
	sources: set[tuple[str, str | None]] = set()

	for entry in entries:
		part = plan.partition(entry.partition)

		if part is None:
			problems.append(f'Mount {entry.key} refers to unknown partition {entry.partition}')
			continue

		if (entry.partition, entry.subvolume) in sources:
			source = f'{entry.partition}:{entry.subvolume}' if entry.subvolume else entry.partition
			problems.append(f'{source} is mounted more than once')
		sources.add((entry.partition, entry.subvolume))

		if entry.subvolume is not None:
			if part.fs_type != FilesystemType.Btrfs:
				problems.append(f'Mount {entry.key} uses subvolume {entry.subvolume} on non-btrfs partition {part.label}')
			elif plan.subvolume(part.label, entry.subvolume) is None:
				problems.append(f'Mount {entry.key} refers to undeclared subvolume {entry.subvolume} on {part.label}')

		if part.fs_type == FilesystemType.Swap:
			if entry.mountpoint is not None:
				problems.append(f'Swap partition {part.label} can not have a mount point ({entry.mountpoint})')
			continue

		if entry.mountpoint is None:
			problems.append(f'Mount of {part.label} has no mount point')
			continue

		if not entry.mountpoint.is_absolute():
			problems.append(f'Mount point {entry.mountpoint} is not an absolute path')

		if entry.mountpoint in mountpoints:
			problems.append(f'Mount point {entry.mountpoint} is used more than once')
		mountpoints.add(entry.mountpoint)

	for entry in entries:
		parent = _nearest_parent(entry, entries)

		if parent is None:
			continue

		if 'noauto' in plan.mount_options(parent) and 'noauto' not in plan.mount_options(entry):
			problems.append(
				f'Mount point {entry.mountpoint} is nested under noauto mount {parent.mountpoint} which is not mounted before it'
			)

	return problems


def _check_caches(plan: ProvisionPlan) -> list[str]:
	problems: list[str] = []
	names: set[str] = set()

	for cache in plan.caches:
		if cache.name in names:
			problems.append(f'Cache {cache.name} is declared more than once')
		names.add(cache.name)

		if not cache.path.is_absolute():
			problems.append(f'Cache {cache.name} path {cache.path} is not absolute')

		for variable in cache.environment:
			if not _ENV_NAME.match(variable):
				problems.append(f'Cache {cache.name} exports invalid variable name {variable}')

	return problems


def load_plan(path: Path) -> ProvisionPlan:
	"""
	Reads a JSON plan file, schema errors are reported like any other
	plan problem.
	"""
	try:
		text = path.read_text()
	except OSError as err:
		raise InvalidPlanError(f'Plan file {path} can not be read: {err.strerror}')

	try:
		return ProvisionPlan.model_validate_json(text)
	except ValidationError as err:
		problems = []

		for detail in err.errors():
			location = '.'.join(str(part) for part in detail['loc'])
			problems.append(f'{location}: {detail["msg"]}' if location else detail['msg'])

		raise InvalidPlanError(problems)


def validate_plan(plan: ProvisionPlan, ops: DeviceOperations) -> PlanLayout:
	"""
	Checks a plan against the devices present without changing anything.
	All problems are collected and raised together as one InvalidPlanError,
	a valid plan returns the computed partition layout per device.
	"""
	layout, problems = _check_devices(plan, ops)

	problems += _check_partitions(plan)
	problems += _check_subvolumes(plan)
	problems += _check_mounts(plan)
	problems += _check_caches(plan)

	if problems:
		raise InvalidPlanError(problems)

	debug(f'Plan validated: {len(plan.disks)} disk(s), {len(plan.resolved_mounts())} mount(s)')
	return layout
