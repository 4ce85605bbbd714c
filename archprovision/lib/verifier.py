from __future__ import annotations

from pathlib import Path

from .cache import PROFILE_PATH, TMPFILES_PATH, exported_variables
from .disk.operations import DeviceOperations
from .disk.utils import partition_path, relative_to_root
from .fstab import FstabEntry, read_fstab
from .models.device import CRYPTO_LUKS, FilesystemType, MountInfo
from .models.plan import MountPlanEntry, PartitionSpec, ProvisionPlan
from .models.report import Status, VerificationReport
from .output import debug

ESP_MOUNTPOINTS = [Path('/boot'), Path('/efi'), Path('/boot/efi')]
PSEUDO_FILESYSTEMS = ('tmpfs', 'proc', 'sysfs', 'devpts', 'devtmpfs', 'efivarfs', 'none')


class Verifier:
	"""
	Read-only audit of the live system. Every check adds exactly one
	finding to the report, running it twice without changes in between
	gives the same findings in the same order.
	"""

	def __init__(self, ops: DeviceOperations, root: Path = Path('/')) -> None:
		self._ops = ops
		self._root = root

	@property
	def fstab_path(self) -> Path:
		return relative_to_root(self._root, Path('/etc/fstab'))

	def verify(self, plan: ProvisionPlan | None = None) -> VerificationReport:
		report = VerificationReport()

		if plan is None:
			self._generic_checks(report)
		else:
			self._plan_checks(plan, report)

		counts = report.summary()
		debug(f'Verification finished: {counts}')
		return report

	def _missing(self, optional: bool) -> Status:
		return Status.Warn if optional else Status.Fail

	def _load_fstab(self) -> tuple[list[FstabEntry] | None, str]:
		if not self.fstab_path.exists():
			return None, f'{self.fstab_path} does not exist'

		try:
			return read_fstab(self.fstab_path), ''
		except ValueError as err:
			return None, f'{self.fstab_path} can not be parsed: {err}'

	def _device_of(self, plan: ProvisionPlan, part: PartitionSpec) -> Path:
		"""
		The node the filesystem of a partition lives on.
		"""
		if part.encryption is not None:
			return part.encryption.mapper_path

		located = plan.locate(part.label)
		assert located is not None
		disk, number = located
		return partition_path(disk.device, number)

	def _plan_checks(self, plan: ProvisionPlan, report: VerificationReport) -> None:
		for disk in plan.disks:
			if self._ops.block_device_exists(disk.device):
				report.add('device', str(disk.device), Status.Pass, 'Device present')
			else:
				report.add(
					'device',
					str(disk.device),
					Status.Fail,
					'Device missing',
					'Check the cabling or the device path in the plan',
				)

		for disk, number, part in plan.partitions():
			path = partition_path(disk.device, number)

			if not self._ops.block_device_exists(path):
				report.add(
					'partition',
					f'{path} ({part.label})',
					self._missing(part.optional),
					'Partition missing',
					'Apply the plan to create the partition',
				)
				continue

			report.add('partition', f'{path} ({part.label})', Status.Pass, 'Partition present')
			self._check_fstype(part, path, report)

		self._check_subvolumes(plan, report)

		mounts = self._ops.list_mounts()
		fstab, fstab_problem = self._load_fstab()

		if fstab is None:
			report.add('fstab', str(self.fstab_path), Status.Fail, fstab_problem, 'Write the fstab with "genfstab -U"')

		for entry in plan.resolved_mounts():
			part = plan.partition(entry.partition)
			assert part is not None

			if part.fs_type == FilesystemType.Swap:
				self._check_swap(plan, part, entry, report)
			else:
				self._check_mount(plan, part, entry, mounts, report)

			if fstab is not None:
				self._check_fstab_entry(plan, part, entry, fstab, report)

		if plan.caches:
			self._check_caches(plan, report)

	def _check_fstype(self, part: PartitionSpec, path: Path, report: VerificationReport) -> None:
		target = f'{path} ({part.label})'
		actual = self._ops.get_fstype(path)
		expected = CRYPTO_LUKS if part.encryption else part.fs_type.blkid_value

		if actual != expected:
			report.add(
				'filesystem',
				target,
				self._missing(part.optional),
				f'Expected {expected}, found {actual or "no filesystem"}',
				'Re-apply the plan, the partition was formatted differently',
			)
			return

		if part.encryption is None:
			report.add('filesystem', target, Status.Pass, f'{expected} filesystem')
			return

		if not self._ops.is_mapper_open(part.encryption.mapper_name):
			report.add(
				'filesystem',
				target,
				Status.Warn,
				f'LUKS container present, mapping {part.encryption.mapper_name} is closed so the inner filesystem was not checked',
				f'Open it with "cryptsetup open {path} {part.encryption.mapper_name}"',
			)
			return

		inner = self._ops.get_fstype(part.encryption.mapper_path)
		if inner != part.fs_type.blkid_value:
			report.add(
				'filesystem',
				target,
				self._missing(part.optional),
				f'LUKS container holds {inner or "no filesystem"}, expected {part.fs_type.blkid_value}',
				'Re-apply the plan, the mapped device was formatted differently',
			)
			return

		report.add('filesystem', target, Status.Pass, f'{CRYPTO_LUKS} holding {inner}')

	def _check_subvolumes(self, plan: ProvisionPlan, report: VerificationReport) -> None:
		mounts = self._ops.list_mounts()

		for _, _, part in plan.partitions():
			subvolumes = plan.subvolumes_of(part.label)
			if not subvolumes or part.fs_type != FilesystemType.Btrfs:
				continue

			device = str(self._device_of(plan, part))
			live = next((m for m in mounts if m.source == device and m.fstype == 'btrfs'), None)

			if live is None:
				for subvol in subvolumes:
					report.add(
						'subvolume',
						f'{part.label}:{subvol.name}',
						Status.Warn,
						f'{part.label} is not mounted, subvolumes could not be listed',
						'Mount the filesystem and verify again',
					)
				continue

			existing = self._ops.list_subvolumes(live.target)

			for subvol in subvolumes:
				if subvol.name in existing:
					report.add('subvolume', f'{part.label}:{subvol.name}', Status.Pass, 'Subvolume present')
				else:
					report.add(
						'subvolume',
						f'{part.label}:{subvol.name}',
						self._missing(subvol.optional),
						'Subvolume missing',
						f'Create it with "btrfs subvolume create <top level>/{subvol.name}"',
					)

	def _check_mount(
		self,
		plan: ProvisionPlan,
		part: PartitionSpec,
		entry: MountPlanEntry,
		mounts: list[MountInfo],
		report: VerificationReport,
	) -> None:
		assert entry.mountpoint is not None
		target = relative_to_root(self._root, entry.mountpoint)
		live = next((m for m in reversed(mounts) if m.target == target), None)
		optional = entry.optional or part.optional

		if live is None:
			report.add(
				'mount',
				str(entry.mountpoint),
				self._missing(optional),
				'Not mounted',
				f'Mount it with "mount {target}" once the fstab entry exists',
			)
			return

		expected_source = str(self._device_of(plan, part))
		problems = []

		if live.source != expected_source:
			problems.append(f'source is {live.source}, expected {expected_source}')
		if live.fstype != part.fs_type.fs_type_mount:
			problems.append(f'filesystem is {live.fstype}, expected {part.fs_type.fs_type_mount}')
		if live.subvolume != entry.subvolume:
			problems.append(f'subvolume is {live.subvolume or "top level"}, expected {entry.subvolume or "top level"}')

		if problems:
			report.add(
				'mount',
				str(entry.mountpoint),
				Status.Fail,
				'; '.join(problems),
				f'Unmount {target} and mount the planned filesystem there',
			)
			return

		report.add('mount', str(entry.mountpoint), Status.Pass, f'{live.source} mounted')

		planned = [o for o in plan.mount_options(entry) if o.startswith('compress') or o == 'nodatacow']
		if not planned:
			return

		missing = [o for o in planned if o not in live.options]
		if missing:
			report.add(
				'options',
				str(entry.mountpoint),
				Status.Warn,
				f'Mount options lack {", ".join(missing)}',
				'Fix the options in fstab and remount',
			)
		else:
			report.add('options', str(entry.mountpoint), Status.Pass, f'Mounted with {", ".join(planned)}')

	def _check_swap(self, plan: ProvisionPlan, part: PartitionSpec, entry: MountPlanEntry, report: VerificationReport) -> None:
		device = self._device_of(plan, part)

		if device in self._ops.list_swaps():
			report.add('swap', part.label, Status.Pass, f'Swap active on {device}')
		else:
			report.add(
				'swap',
				part.label,
				self._missing(entry.optional or part.optional),
				f'Swap not active on {device}',
				f'Enable it with "swapon {device}"',
			)

	def _check_fstab_entry(
		self,
		plan: ProvisionPlan,
		part: PartitionSpec,
		entry: MountPlanEntry,
		fstab: list[FstabEntry],
		report: VerificationReport,
	) -> None:
		uuid = self._ops.get_uuid(self._device_of(plan, part))
		optional = entry.optional or part.optional

		if part.fs_type == FilesystemType.Swap:
			target = f'swap ({part.label})'
			candidates = [e for e in fstab if e.is_swap]
		else:
			target = str(entry.mountpoint)
			candidates = [e for e in fstab if e.mountpoint == target]

		if uuid is not None:
			for candidate in candidates:
				if candidate.uuid == uuid:
					report.add('fstab', target, Status.Pass, f'Registered as UUID={uuid}')
					return

		if candidates and part.fs_type != FilesystemType.Swap:
			report.add(
				'fstab',
				target,
				Status.Fail,
				f'Registered as {candidates[0].source}, expected UUID={uuid}',
				'Device paths change between boots, use the UUID reported by "blkid"',
			)
			return

		report.add(
			'fstab',
			target,
			self._missing(optional),
			'No UUID keyed fstab entry',
			'Add the entry with "genfstab -U" or re-apply the plan',
		)

	def _check_caches(self, plan: ProvisionPlan, report: VerificationReport) -> None:
		profile = relative_to_root(self._root, PROFILE_PATH)
		tmpfiles = relative_to_root(self._root, TMPFILES_PATH)

		exported: dict[str, str] = {}
		if profile.exists():
			exported = exported_variables(profile.read_text())
			report.add('helper', str(PROFILE_PATH), Status.Pass, 'Present')
		else:
			report.add('helper', str(PROFILE_PATH), Status.Warn, 'Missing', 'Re-apply the plan to write the cache configuration')

		if tmpfiles.exists():
			report.add('helper', str(TMPFILES_PATH), Status.Pass, 'Present')
		else:
			report.add('helper', str(TMPFILES_PATH), Status.Warn, 'Missing', 'Re-apply the plan to write the cache configuration')

		for cache in plan.caches:
			missing = [k for k, v in cache.environment.items() if exported.get(k) != v]

			if not self._ops.is_directory(relative_to_root(self._root, cache.path)):
				report.add('cache', cache.name, Status.Warn, f'{cache.path} does not exist', f'Create it with "mkdir -p {cache.path}"')
			elif missing:
				report.add('cache', cache.name, Status.Warn, f'Not exported: {", ".join(missing)}', f'Add the exports to {PROFILE_PATH}')
			else:
				report.add('cache', cache.name, Status.Pass, f'{cache.path} configured')

	def _generic_checks(self, report: VerificationReport) -> None:
		mounts = [m for m in self._ops.list_mounts() if m.target == self._root or self._root in m.target.parents]

		def _at(mountpoint: Path) -> MountInfo | None:
			target = relative_to_root(self._root, mountpoint)
			return next((m for m in reversed(mounts) if m.target == target), None)

		if root := _at(Path('/')):
			report.add('mount', '/', Status.Pass, f'{root.source} mounted as {root.fstype}')
		else:
			report.add('mount', '/', Status.Fail, 'Root filesystem is not mounted', f'Mount the root filesystem at {self._root}')

		fstab, fstab_problem = self._load_fstab()

		if fstab is None:
			report.add('fstab', str(self.fstab_path), Status.Fail, fstab_problem, 'Write the fstab with "genfstab -U"')
		else:
			report.add('fstab', str(self.fstab_path), Status.Pass, f'{len(fstab)} entries')

			block_entries = [e for e in fstab if e.fstype not in PSEUDO_FILESYSTEMS and not e.source.startswith('/dev/mapper/')]
			unstable = [e for e in block_entries if e.uuid is None and not e.source.startswith(('PARTUUID=', 'LABEL=', 'PARTLABEL='))]

			if not any(e.uuid for e in fstab):
				report.add('fstab', 'UUID', Status.Fail, 'No UUID keyed entries', 'Regenerate the fstab with "genfstab -U"')
			elif unstable:
				report.add(
					'fstab',
					'UUID',
					Status.Warn,
					f'Entries keyed by device path: {", ".join(e.source for e in unstable)}',
					'Device paths change between boots, use UUIDs',
				)
			else:
				report.add('fstab', 'UUID', Status.Pass, 'Block devices are keyed by UUID')

		esp = next((m for mp in ESP_MOUNTPOINTS if (m := _at(mp)) is not None), None)
		if esp is not None and esp.fstype == FilesystemType.Vfat.fs_type_mount:
			report.add('esp', str(esp.target), Status.Pass, f'{esp.source} mounted as vfat')
		elif esp is not None:
			report.add('esp', str(esp.target), Status.Fail, f'Mounted as {esp.fstype}, expected vfat', 'The EFI system partition must be FAT32')
		else:
			report.add('esp', '/boot', Status.Warn, 'No EFI system partition mounted', 'Mount the ESP at /boot')

		if swaps := self._ops.list_swaps():
			report.add('swap', 'swap', Status.Pass, f'Active on {", ".join(str(s) for s in swaps)}')
		else:
			report.add('swap', 'swap', Status.Warn, 'No active swap', 'Enable a swap partition with "swapon"')

		for mount in [m for m in mounts if m.fstype == FilesystemType.Btrfs.fs_type_mount]:
			if 'noatime' in mount.options:
				report.add('options', str(mount.target), Status.Pass, 'btrfs mounted with noatime')
			else:
				report.add('options', str(mount.target), Status.Warn, 'btrfs mounted without noatime', 'Add noatime to the fstab options')

		for helper in (PROFILE_PATH, TMPFILES_PATH):
			if relative_to_root(self._root, helper).exists():
				report.add('helper', str(helper), Status.Pass, 'Present')
			else:
				report.add('helper', str(helper), Status.Warn, 'Missing', 'Run "plan apply" with caches declared or create it manually')
