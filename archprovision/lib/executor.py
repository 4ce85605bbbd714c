from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from .cache import write_cache_configuration
from .disk.operations import DeviceOperations
from .disk.utils import relative_to_root
from .exceptions import (
	DestructiveOperationRefused,
	DeviceBusyError,
	DeviceNotFoundError,
	ExecutionError,
	MountFailure,
	PartitionNotReadyError,
	ProvisionError,
	SysCallError,
)
from .fstab import CrypttabEntry, FstabEntry, mount_order, write_crypttab, write_fstab
from .models.device import FilesystemType
from .models.plan import EncryptionSpec, MountPlanEntry, ProvisionPlan
from .output import debug, info, warn
from .steps import Step, StepGraph
from .validation import PartitionExtent, PlanLayout, validate_plan

PassphraseProvider = Callable[[EncryptionSpec], str]

DEFAULT_TARGET = Path('/mnt')
DEFAULT_SCRATCH = Path('/run/archprovision/btrfs')

_REMEDIATION = {
	'wipe': 'Make sure nothing on the device is mounted or used as swap, then re-run "plan apply"',
	'partition': 'Inspect the device with "parted -l"; the plan can be applied again from the start',
	'settle': 'Check "dmesg" for errors on the device and re-run "plan apply" once the partitions show up in /dev',
	'format': 'The partition table exists but formatting did not complete; re-run "plan apply" to start over',
	'subvolumes': 'Unmount the scratch mount point if it is still mounted and re-run "plan apply"',
	'mount': 'Partially mounted state is left in place, inspect with "findmnt" and unmount manually before re-running',
	'fstab': 'The mounts are active; write the fstab by hand with "genfstab -U" if the problem persists',
	'caches': 'The disks are provisioned; create the cache directories and helper files manually',
}


@dataclass(frozen=True)
class ConfirmationToken:
	"""
	Explicit consent to destroy the data on a set of devices.
	"""
	devices: frozenset[Path]

	@classmethod
	def for_plan(cls, plan: ProvisionPlan) -> ConfirmationToken:
		return cls(frozenset(plan.devices()))

	@classmethod
	def for_devices(cls, *devices: Path) -> ConfirmationToken:
		return cls(frozenset(devices))

	def covers(self, devices: list[Path]) -> bool:
		return set(devices) <= self.devices


def require_confirmation(plan: ProvisionPlan, confirmation: ConfirmationToken | None) -> None:
	devices = plan.devices()

	if confirmation is None or not confirmation.covers(devices):
		missing = devices if confirmation is None else sorted(set(devices) - confirmation.devices)
		raise DestructiveOperationRefused(
			f'Refusing to modify {", ".join(str(d) for d in missing)} without confirmation',
			step='preflight',
			remediation='Re-run with --confirm after double checking the device paths in the plan',
		)


@dataclass
class ApplyResult:
	steps: list[str] = field(default_factory=list)
	fstab: list[FstabEntry] = field(default_factory=list)
	crypttab: list[CrypttabEntry] = field(default_factory=list)
	files: list[Path] = field(default_factory=list)


@dataclass
class _ApplyState:
	passphrase_provider: PassphraseProvider | None
	force: bool
	passphrases: dict[str, str] = field(default_factory=dict)
	# filesystem UUID per partition label, the inner one for encrypted partitions
	uuids: dict[str, str] = field(default_factory=dict)
	luks_uuids: dict[str, str] = field(default_factory=dict)
	result: ApplyResult = field(default_factory=ApplyResult)

	def passphrase(self, spec: EncryptionSpec) -> str:
		if spec.mapper_name not in self.passphrases:
			if self.passphrase_provider is None:
				raise ExecutionError(
					f'No passphrase available for {spec.mapper_name}',
					step='preflight',
					remediation='Pass --passphrase-file or run interactively',
				)
			self.passphrases[spec.mapper_name] = self.passphrase_provider(spec)

		return self.passphrases[spec.mapper_name]


class Executor:
	def __init__(
		self,
		ops: DeviceOperations,
		target: Path = DEFAULT_TARGET,
		scratch: Path = DEFAULT_SCRATCH,
		sleep: Callable[[float], None] = time.sleep,
		settle_attempts: int = 20,
		settle_interval: float = 0.5,
		mount_retries: int = 2,
	) -> None:
		self._ops = ops
		self._target = target
		self._scratch = scratch
		self._sleep = sleep
		self._settle_attempts = settle_attempts
		self._settle_interval = settle_interval
		self._mount_retries = mount_retries

	@property
	def target(self) -> Path:
		return self._target

	def dry_run(self, plan: ProvisionPlan) -> list[Step]:
		layout = validate_plan(plan, self._ops)
		state = _ApplyState(passphrase_provider=None, force=False)
		return self._build_steps(plan, layout, state).ordered()

	def apply(
		self,
		plan: ProvisionPlan,
		confirmation: ConfirmationToken | None,
		force: bool = False,
		passphrase_provider: PassphraseProvider | None = None,
	) -> ApplyResult:
		layout = validate_plan(plan, self._ops)
		self._preflight(plan, layout, confirmation, force, passphrase_provider)

		state = _ApplyState(passphrase_provider=passphrase_provider, force=force)
		graph = self._build_steps(plan, layout, state)
		order = graph.ordered()

		# ask for every passphrase before the first device is touched
		for part in plan.encrypted_partitions():
			if part.encryption is not None:
				state.passphrase(part.encryption)

		for index, step in enumerate(order):
			info(f'[{step.phase}] {step.description}')

			try:
				self._run_step(step)
			except ProvisionError as err:
				if step.phase != 'mount':
					raise err

				pending = [s.key for s in order[index + 1 :] if s.key.startswith(('mount:', 'swapon:'))]
				raise MountFailure([step.key], pending, command=err.command, reason=err.message) from err

			state.result.steps.append(step.key)

		info(f'Plan applied to {", ".join(str(d) for d in plan.devices())}, target mounted at {self._target}')
		return state.result

	def _preflight(
		self,
		plan: ProvisionPlan,
		layout: PlanLayout,
		confirmation: ConfirmationToken | None,
		force: bool,
		passphrase_provider: PassphraseProvider | None,
	) -> None:
		require_confirmation(plan, confirmation)
		devices = plan.devices()

		for device in devices:
			if not self._ops.block_device_exists(device):
				raise DeviceNotFoundError(f'Device {device} does not exist', step='preflight')

			if self._ops.is_mounted(device):
				raise DeviceBusyError(
					f'Device {device} or one of its partitions is in use',
					step='preflight',
					remediation=f'Unmount everything on {device} and disable swap on it ("swapoff -a")',
				)

		for extents in layout.values():
			for extent in extents:
				self._refuse_existing_luks(extent, force, step='preflight')
				self._refuse_open_mapper(extent)

		if plan.encrypted_partitions() and passphrase_provider is None:
			raise ExecutionError(
				'The plan contains encrypted partitions but no passphrase source was given',
				step='preflight',
				remediation='Pass --passphrase-file or run interactively',
			)

		for device in devices:
			warn(f'All data on {device} will be destroyed')

	def _refuse_open_mapper(self, extent: PartitionExtent) -> None:
		spec = extent.spec.encryption
		if spec is None or not self._ops.is_mapper_open(spec.mapper_name):
			return

		backing = self._ops.mapper_backing_device(spec.mapper_name)

		raise DeviceBusyError(
			f'Mapping {spec.mapper_name} is already open on {backing or "an unknown device"}, refusing to format {extent.path} through it',
			step='preflight',
			command=['cryptsetup', 'status', spec.mapper_name],
			remediation=f'Unmount whatever uses /dev/mapper/{spec.mapper_name} and close it with "cryptsetup close {spec.mapper_name}"',
		)

	def _refuse_existing_luks(self, extent: PartitionExtent, force: bool, step: str) -> None:
		if extent.spec.encryption is None:
			return

		path = extent.path
		if not self._ops.block_device_exists(path) or not self._ops.is_luks(path):
			return

		if force:
			warn(f'{path} already contains a LUKS container, overwriting because force was given')
			return

		raise DestructiveOperationRefused(
			f'{path} already contains a LUKS container',
			step=step,
			command=['cryptsetup', 'isLuks', str(path)],
			remediation='Re-run with --force if the encrypted data on it may be destroyed',
		)

	def _run_step(self, step: Step) -> None:
		attempts = 1 if step.destructive else 1 + step.retries

		for attempt in range(1, attempts + 1):
			try:
				step.action()
				return
			except ProvisionError as err:
				if err.step is None:
					err.step = step.key
				if not err.remediation:
					err.remediation = _REMEDIATION.get(step.phase)
				raise err
			except SysCallError as err:
				if attempt < attempts:
					warn(f'Step {step.key} failed (attempt {attempt} of {attempts}), retrying: {err.message}')
					self._sleep(self._settle_interval)
					continue

				raise ExecutionError(
					f'Step {step.key} failed: {err.message}',
					step=step.key,
					command=err.cmd,
					remediation=_REMEDIATION.get(step.phase),
				) from err

	def _build_steps(self, plan: ProvisionPlan, layout: PlanLayout, state: _ApplyState) -> StepGraph:
		graph = StepGraph()
		ops = self._ops

		for disk in plan.disks:
			extents = layout[disk.device]
			device = disk.device

			graph.add(
				Step(
					f'wipe:{device}',
					'wipe',
					f'Wipe signatures on {device}',
					lambda device=device: ops.wipe_signatures(device),
					destructive=True,
				)
			)
			graph.add(
				Step(
					f'partition:{device}',
					'partition',
					f'Create {disk.table} partition table with {len(extents)} partition(s) on {device}',
					lambda device=device, table=disk.table, extents=extents: self._partition(device, table, extents),
					depends_on=[f'wipe:{device}'],
					destructive=True,
				)
			)
			graph.add(
				Step(
					f'settle:{device}',
					'settle',
					f'Wait for the partitions of {device}',
					lambda device=device, extents=extents: self._settle(device, extents),
					depends_on=[f'partition:{device}'],
				)
			)

		for extents in layout.values():
			for extent in extents:
				label = extent.spec.label

				graph.add(
					Step(
						f'format:{label}',
						'format',
						f'Format {extent.path} ({label}) as {extent.spec.fs_type.value}'
						+ (' inside LUKS2' if extent.spec.encryption else ''),
						lambda extent=extent: self._format(extent, state),
						depends_on=[f'settle:{extent.disk.device}'],
						destructive=True,
					)
				)

				if subvolumes := plan.subvolumes_of(label):
					graph.add(
						Step(
							f'subvolumes:{label}',
							'subvolumes',
							f'Create subvolumes {", ".join(s.name for s in subvolumes)} on {label}',
							lambda extent=extent: self._create_subvolumes(plan, extent, state),
							depends_on=[f'format:{label}'],
						)
					)

		filesystem_steps = graph.keys('format') + graph.keys('subvolumes')

		graph.add(
			Step(
				'fstab:compose',
				'fstab',
				'Compose fstab entries keyed by UUID',
				lambda: self._compose(plan, layout, state),
				depends_on=filesystem_steps,
			)
		)

		extents_by_label = {e.spec.label: e for extents in layout.values() for e in extents}
		mount_keys = self._add_mount_steps(graph, plan, extents_by_label, state)

		graph.add(
			Step(
				'fstab:write',
				'fstab',
				f'Write {relative_to_root(self._target, Path("/etc/fstab"))}',
				lambda: self._write_tables(state),
				depends_on=['fstab:compose', *mount_keys],
			)
		)

		if plan.caches:
			graph.add(
				Step(
					'caches',
					'caches',
					f'Configure {len(plan.caches)} development cache director{"y" if len(plan.caches) == 1 else "ies"}',
					lambda: state.result.files.extend(write_cache_configuration(self._target, plan.caches, ops)),
					depends_on=['fstab:write', *mount_keys],
				)
			)

		return graph

	def _add_mount_steps(
		self,
		graph: StepGraph,
		plan: ProvisionPlan,
		extents: dict[str, PartitionExtent],
		state: _ApplyState,
	) -> list[str]:
		keys: list[str] = []
		entries = plan.resolved_mounts()
		mounted = [e for e in entries if e.mountpoint is not None]
		swaps = [e for e in entries if e.mountpoint is None]

		# parents first, a parent always has fewer path components
		mounted.sort(key=lambda e: len(e.mountpoint.parts) if e.mountpoint else 0)

		for entry in mounted:
			assert entry.mountpoint is not None
			mountpoint = entry.mountpoint
			extent = extents[entry.partition]
			parent = self._nearest_mounted_parent(mountpoint, mounted)

			filesystem_deps = [f'format:{entry.partition}']
			if f'subvolumes:{entry.partition}' in graph:
				filesystem_deps.append(f'subvolumes:{entry.partition}')

			parent_deps = [f'mount:{parent}'] if parent is not None else []

			graph.add(
				Step(
					f'mkdir:{mountpoint}',
					'mount',
					f'Create mount point {relative_to_root(self._target, mountpoint)}',
					lambda mountpoint=mountpoint: self._ops.make_directory(relative_to_root(self._target, mountpoint)),
					depends_on=parent_deps,
					retries=self._mount_retries,
				)
			)
			graph.add(
				Step(
					f'mount:{mountpoint}',
					'mount',
					f'Mount {entry.partition}{":" + entry.subvolume if entry.subvolume else ""} at {relative_to_root(self._target, mountpoint)}',
					lambda entry=entry, extent=extent: self._mount(plan, entry, extent, state),
					depends_on=[f'mkdir:{mountpoint}', *filesystem_deps, *parent_deps],
					retries=self._mount_retries,
				)
			)
			keys.append(f'mount:{mountpoint}')

		for entry in swaps:
			extent = extents[entry.partition]

			graph.add(
				Step(
					f'swapon:{entry.partition}',
					'mount',
					f'Enable swap on {extent.path}',
					lambda extent=extent: self._swapon(extent, state),
					depends_on=[f'format:{entry.partition}'],
					retries=self._mount_retries,
				)
			)
			keys.append(f'swapon:{entry.partition}')

		return keys

	@staticmethod
	def _nearest_mounted_parent(mountpoint: Path, entries: list[MountPlanEntry]) -> Path | None:
		candidates = [e.mountpoint for e in entries if e.mountpoint is not None and e.mountpoint in mountpoint.parents]

		if not candidates:
			return None

		return max(candidates, key=lambda p: len(p.parts))

	def _partition(self, device: Path, table: str, extents: list[PartitionExtent]) -> None:
		self._ops.create_partition_table(device, table)

		for extent in extents:
			self._ops.create_partition(device, extent.spec.label, extent.spec.fs_type, extent.start, extent.end)

			if extent.spec.is_esp:
				self._ops.set_esp(device, extent.number)

	def _settle(self, device: Path, extents: list[PartitionExtent]) -> None:
		self._ops.reread_partitions(device)
		missing = [e.path for e in extents]

		for attempt in range(self._settle_attempts):
			missing = [p for p in missing if not self._ops.block_device_exists(p)]

			if not missing:
				debug(f'Partitions of {device} ready after {attempt + 1} poll(s)')
				return

			self._sleep(self._settle_interval)

		raise PartitionNotReadyError(
			f'Partition node(s) {", ".join(str(p) for p in missing)} did not appear after {self._settle_attempts} attempts',
			command=['partprobe', str(device)],
			remediation='Run "partprobe" and "udevadm settle" manually, check "dmesg", then re-run "plan apply"',
		)

	def _open(self, extent: PartitionExtent, state: _ApplyState) -> Path:
		spec = extent.spec.encryption
		assert spec is not None

		if self._ops.is_mapper_open(spec.mapper_name):
			backing = self._ops.mapper_backing_device(spec.mapper_name)

			if backing != extent.path:
				raise DeviceBusyError(
					f'Mapping {spec.mapper_name} is open on {backing or "an unknown device"} instead of {extent.path}',
					command=['cryptsetup', 'status', spec.mapper_name],
					remediation=f'Close it with "cryptsetup close {spec.mapper_name}" and re-run "plan apply"',
				)

			return spec.mapper_path

		return self._ops.luks_open(extent.path, spec.mapper_name, state.passphrase(spec))

	def _format(self, extent: PartitionExtent, state: _ApplyState) -> None:
		part = extent.spec
		features = part.btrfs_features() if part.fs_type == FilesystemType.Btrfs else None

		if part.encryption is None:
			self._ops.mkfs(extent.path, part.fs_type, part.label, features)
			if uuid := self._ops.get_uuid(extent.path):
				state.uuids[part.label] = uuid
			return

		self._refuse_existing_luks(extent, state.force, step=f'format:{part.label}')

		self._ops.luks_format(extent.path, part.encryption, state.passphrase(part.encryption))
		if luks_uuid := self._ops.get_uuid(extent.path):
			state.luks_uuids[part.label] = luks_uuid

		mapper = self._ops.luks_open(extent.path, part.encryption.mapper_name, state.passphrase(part.encryption))

		try:
			self._ops.mkfs(mapper, part.fs_type, part.label, features)
			if uuid := self._ops.get_uuid(mapper):
				state.uuids[part.label] = uuid
		finally:
			self._ops.luks_close(part.encryption.mapper_name)

	def _create_subvolumes(self, plan: ProvisionPlan, extent: PartitionExtent, state: _ApplyState) -> None:
		part = extent.spec
		device = self._open(extent, state) if part.encryption else extent.path

		try:
			self._ops.make_directory(self._scratch)
			self._ops.mount(device, self._scratch, FilesystemType.Btrfs.fs_type_mount)

			try:
				existing = self._ops.list_subvolumes(self._scratch)

				for subvol in plan.subvolumes_of(part.label):
					if subvol.name in existing:
						debug(f'Subvolume {subvol.name} already exists on {part.label}')
					else:
						self._ops.create_subvolume(self._scratch, subvol.name)

					if subvol.nodatacow:
						self._ops.set_nocow(self._scratch / subvol.name)
			finally:
				self._ops.umount(self._scratch)
		finally:
			if part.encryption:
				self._ops.luks_close(part.encryption.mapper_name)

	def _compose(self, plan: ProvisionPlan, layout: PlanLayout, state: _ApplyState) -> None:
		entries: list[FstabEntry] = []

		for entry in plan.resolved_mounts():
			part = plan.partition(entry.partition)
			assert part is not None

			uuid = state.uuids.get(part.label)
			if uuid is None:
				raise ExecutionError(
					f'No filesystem UUID known for {part.label}',
					step='fstab:compose',
					command=['blkid', '-s', 'UUID', '-o', 'value'],
				)

			if part.fs_type == FilesystemType.Swap:
				entries.append(FstabEntry(f'UUID={uuid}', 'none', 'swap', ('defaults',), 0, 0))
				continue

			entries.append(
				FstabEntry(
					f'UUID={uuid}',
					str(entry.mountpoint),
					part.fs_type.fs_type_mount,
					tuple(plan.mount_options(entry)),
					entry.dump,
					plan.passno(entry),
				)
			)

		state.result.fstab = mount_order(entries)

		for extent in [e for extents in layout.values() for e in extents]:
			spec = extent.spec.encryption
			if spec is None:
				continue

			luks_uuid = state.luks_uuids.get(extent.spec.label)
			if luks_uuid is None:
				raise ExecutionError(f'No LUKS UUID known for {extent.path}', step='fstab:compose')

			state.result.crypttab.append(CrypttabEntry(spec.mapper_name, f'UUID={luks_uuid}'))

		for fstab_entry in state.result.fstab:
			debug(f'fstab: {fstab_entry.render()}')

	def _mount(self, plan: ProvisionPlan, entry: MountPlanEntry, extent: PartitionExtent, state: _ApplyState) -> None:
		assert entry.mountpoint is not None
		target = relative_to_root(self._target, entry.mountpoint)
		device = self._open(extent, state) if extent.spec.encryption else extent.path

		current = self._ops.mount_at(target)
		if current is not None and current.source == str(device) and current.subvolume == entry.subvolume:
			info(f'{device} is already mounted at {target}')
			return

		self._ops.mount(device, target, extent.spec.fs_type.fs_type_mount, plan.mount_options(entry))

	def _swapon(self, extent: PartitionExtent, state: _ApplyState) -> None:
		device = self._open(extent, state) if extent.spec.encryption else extent.path

		if device in self._ops.list_swaps():
			info(f'Swap already active on {device}')
			return

		self._ops.swapon(device)

	def _write_tables(self, state: _ApplyState) -> None:
		fstab_path = relative_to_root(self._target, Path('/etc/fstab'))
		write_fstab(fstab_path, state.result.fstab)
		state.result.files.append(fstab_path)

		if state.result.crypttab:
			crypttab_path = relative_to_root(self._target, Path('/etc/crypttab'))
			write_crypttab(crypttab_path, state.result.crypttab)
			state.result.files.append(crypttab_path)
