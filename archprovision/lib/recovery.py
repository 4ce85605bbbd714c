from __future__ import annotations

from enum import Enum
from pathlib import Path

from .disk.operations import DeviceOperations
from .disk.utils import partition_path, relative_to_root
from .exceptions import DestructiveOperationRefused, DiskError
from .executor import ConfirmationToken
from .fstab import FstabEntry, read_fstab, register_fstab_entry
from .models.device import FilesystemType
from .models.plan import ProvisionPlan
from .output import info, warn

HOME = Path('/home')
DEFAULT_SUBVOLUME = '@home'
DEFAULT_OPTIONS = ['noatime', 'compress=zstd:1', 'space_cache=v2']
DEFAULT_SCRATCH = Path('/run/archprovision/home')


class RecoveryAction(Enum):
	AlreadyMounted = 'already mounted'
	Registered = 'registered existing mount'
	MountedSubvolume = 'mounted existing subvolume'
	CreatedSubvolume = 'created subvolume'
	Formatted = 'formatted device'
	DirectoryFallback = 'plain directory'


class HomeRecovery:
	"""
	Brings /home back when the expected device or subvolume is missing.

	Existing data is never removed. Top level contents of the target
	filesystem and whatever sits in the /home directory of the root
	filesystem are moved into the subvolume before it is mounted over
	/home, a directory used as fallback is left as it is.
	"""

	def __init__(self, ops: DeviceOperations, root: Path = Path('/'), scratch: Path = DEFAULT_SCRATCH) -> None:
		self._ops = ops
		self._root = root
		self._scratch = scratch

	@property
	def home(self) -> Path:
		return relative_to_root(self._root, HOME)

	@property
	def fstab_path(self) -> Path:
		return relative_to_root(self._root, Path('/etc/fstab'))

	def _registered(self, source: Path) -> bool:
		"""
		True if fstab mounts source at /home, by UUID or by path.
		"""
		if not self.fstab_path.exists():
			return False

		uuid = self._ops.get_uuid(source)

		for entry in read_fstab(self.fstab_path):
			if entry.mountpoint != str(HOME):
				continue
			if entry.source == str(source) or (uuid is not None and entry.uuid == uuid):
				return True

			warn(f'{self.fstab_path} mounts /home from {entry.source}, which is not {source}')

		return False

	def _planned_target(self, plan: ProvisionPlan) -> tuple[Path, str, list[str]] | None:
		for entry in plan.resolved_mounts():
			if entry.mountpoint != HOME:
				continue

			part = plan.partition(entry.partition)
			located = plan.locate(entry.partition)
			if part is None or located is None:
				return None

			disk, number = located
			path = partition_path(disk.device, number)

			options = plan.mount_options(entry)

			if part.encryption is not None:
				if not self._ops.is_mapper_open(part.encryption.mapper_name):
					raise DiskError(
						f'{part.label} is encrypted and {part.encryption.mapper_name} is not open',
						step='recover-home',
						remediation=f'Open it with "cryptsetup open {path} {part.encryption.mapper_name}" first',
					)
				return part.encryption.mapper_path, entry.subvolume or DEFAULT_SUBVOLUME, options

			return path, entry.subvolume or DEFAULT_SUBVOLUME, options

		return None

	def recover(
		self,
		plan: ProvisionPlan | None = None,
		device: Path | None = None,
		user: str | None = None,
		confirmation: ConfirmationToken | None = None,
	) -> RecoveryAction:
		action = self._recover(plan, device, confirmation)
		info(f'/home recovery: {action.value}')

		if user:
			user_home = self.home / user
			if self._ops.is_directory(user_home):
				info(f'{user_home} already exists')
			else:
				self._ops.make_directory(user_home, owner=user)
				info(f'Created {user_home} owned by {user}')

		return action

	def _recover(
		self,
		plan: ProvisionPlan | None,
		device: Path | None,
		confirmation: ConfirmationToken | None,
	) -> RecoveryAction:
		live = self._ops.mount_at(self.home)

		if live is not None and self._registered(Path(live.source)):
			info(f'{self.home} is mounted from {live.source} and registered in fstab')
			return RecoveryAction.AlreadyMounted

		if live is not None:
			self._register(Path(live.source), live.fstype, live.subvolume, live.options)
			return RecoveryAction.Registered

		subvolume = DEFAULT_SUBVOLUME
		options = [*DEFAULT_OPTIONS, f'subvol={DEFAULT_SUBVOLUME}']

		if device is None and plan is not None:
			if planned := self._planned_target(plan):
				device, subvolume, options = planned

		if device is not None and not self._ops.block_device_exists(device):
			warn(f'{device} does not exist, falling back to a plain directory')
			device = None

		if device is None:
			return self._directory_fallback()

		fstype = self._ops.get_fstype(device)
		action: RecoveryAction | None = None

		if fstype is None:
			if confirmation is None or not confirmation.covers([device]):
				raise DestructiveOperationRefused(
					f'{device} has no filesystem, formatting it needs confirmation',
					step='recover-home',
					remediation='Re-run with --confirm to create a btrfs filesystem on it',
				)

			warn(f'Creating a btrfs filesystem on {device}')
			self._ops.mkfs(device, FilesystemType.Btrfs, 'HOME')
			action = RecoveryAction.Formatted
		elif fstype != FilesystemType.Btrfs.blkid_value:
			raise DestructiveOperationRefused(
				f'{device} holds a {fstype} filesystem, refusing to change it',
				step='recover-home',
				remediation='Pass a device that holds btrfs or has no filesystem with --device',
			)

		created = self._prepare_subvolume(device, subvolume)
		if action is None:
			action = RecoveryAction.CreatedSubvolume if created else RecoveryAction.MountedSubvolume

		options = [o for o in options if not o.startswith('subvol=')] + [f'subvol={subvolume}']

		self._ops.make_directory(self.home)
		self._ops.mount(device, self.home, FilesystemType.Btrfs.fs_type_mount, options)
		self._register(device, FilesystemType.Btrfs.fs_type_mount, subvolume, options)

		return action

	def _prepare_subvolume(self, device: Path, subvolume: str) -> bool:
		"""
		Makes sure the subvolume exists and holds everything its mount
		would hide. Returns True if the subvolume had to be created.
		"""
		self._ops.make_directory(self._scratch)
		self._ops.mount(device, self._scratch, FilesystemType.Btrfs.fs_type_mount)

		try:
			subvolumes = self._ops.list_subvolumes(self._scratch)
			created = subvolume not in subvolumes
			top_level: list[str] = []

			if created:
				top_level = [name for name in self._ops.list_directory(self._scratch) if name not in subvolumes]
				taken = set(top_level)
			else:
				info(f'Found existing subvolume {subvolume} on {device}')
				taken = set(self._ops.list_directory(self._scratch / subvolume))

			# the root filesystem's /home is hidden once the subvolume is mounted over it
			hidden = self._ops.list_directory(self.home) if self._ops.is_directory(self.home) else []

			if collisions := sorted(taken & set(hidden)):
				raise DestructiveOperationRefused(
					f'{", ".join(collisions)} exist both in {self.home} and in {subvolume} on {device}, refusing to overwrite',
					step='recover-home',
					remediation=f'Merge or rename the colliding entries in {self.home} by hand, then re-run recover-home',
				)

			if created:
				self._ops.create_subvolume(self._scratch, subvolume)

			for name in top_level:
				info(f'Moving {name} into {subvolume}')
				self._ops.move(self._scratch / name, self._scratch / subvolume / name)

			for name in hidden:
				info(f'Moving {self.home / name} into {subvolume}')
				self._ops.move(self.home / name, self._scratch / subvolume / name)

			return created
		finally:
			self._ops.umount(self._scratch)

	def _register(self, device: Path, fstype: str, subvolume: str | None, options: list[str]) -> None:
		uuid = self._ops.get_uuid(device)

		if uuid is None:
			warn(f'No UUID found for {device}, /home was not added to fstab')
			return

		options = [o for o in options if o not in ('rw', 'relatime')]
		if subvolume and f'subvol={subvolume}' not in options:
			options = [o for o in options if not o.startswith(('subvol=', 'subvolid='))] + [f'subvol={subvolume}']

		entry = FstabEntry(f'UUID={uuid}', str(HOME), fstype, tuple(options), 0, 0 if fstype == FilesystemType.Btrfs.fs_type_mount else 2)

		if register_fstab_entry(self.fstab_path, entry):
			info(f'Registered /home in {self.fstab_path}')

	def _directory_fallback(self) -> RecoveryAction:
		if self._ops.is_directory(self.home):
			info(f'Using the existing directory {self.home} on the root filesystem')
		else:
			info(f'Creating {self.home} on the root filesystem')
			self._ops.make_directory(self.home)

		return RecoveryAction.DirectoryFallback
