import json
from collections.abc import Callable
from pathlib import Path

import pytest

from archprovision.lib.disk.memory import FakeBlock, FakeFilesystem, InMemoryDeviceOperations
from archprovision.lib.exceptions import (
	DestructiveOperationRefused,
	DeviceBusyError,
	DiskError,
	ExecutionError,
	MountFailure,
	PartitionNotReadyError,
)
from archprovision.lib.executor import ConfirmationToken, Executor
from archprovision.lib.fstab import read_fstab
from archprovision.lib.models.device import Size, Unit
from archprovision.lib.models.plan import EncryptionSpec, ProvisionPlan

MOUNT_ORDER = [
	'/',
	'/boot',
	'/workspace',
	'/.snapshots',
	'/home',
	'/var/log',
	'/var/cache',
	'/home/.snapshots',
	'/var/cache/dev',
]


def _executor(ops: InMemoryDeviceOperations, target: Path, **kwargs: int) -> Executor:
	return Executor(ops, target=target, sleep=lambda _: None, **kwargs)


def test_apply_three_disk_plan(
	device_ops: InMemoryDeviceOperations,
	three_disk_plan: ProvisionPlan,
	target: Path,
	passphrase_provider: Callable[[EncryptionSpec], str],
) -> None:
	result = _executor(device_ops, target).apply(
		three_disk_plan,
		ConfirmationToken.for_plan(three_disk_plan),
		passphrase_provider=passphrase_provider,
	)

	assert len(device_ops.calls_of('wipe_signatures')) == 3
	assert len(device_ops.calls_of('create_partition')) == 6
	assert device_ops.calls_of('set_esp') == [('set_esp', '/dev/nvme0n1', '1')]
	assert len(device_ops.calls_of('luks_format')) == 2
	assert len(device_ops.calls_of('luks_open')) == 5
	assert len(device_ops.calls_of('luks_close')) == 3
	assert set(device_ops.mappers) == {'workspace_encrypted', 'home_encrypted'}

	assert [m.target for m in device_ops.mounts] == [target / mp.lstrip('/') for mp in MOUNT_ORDER]
	assert device_ops.swaps == [Path('/dev/sda1')]

	assert result.steps[0] == 'wipe:/dev/nvme0n1'
	assert result.steps[-1] == 'caches'
	assert result.files == [
		target / 'etc/fstab',
		target / 'etc/crypttab',
		target / 'etc/profile.d/dev-paths.sh',
		target / 'etc/tmpfiles.d/dev-caches.conf',
	]


def test_subvolumes_and_filesystems(applied_ops: InMemoryDeviceOperations) -> None:
	created = [call[2] for call in applied_ops.calls_of('create_subvolume')]

	assert created == ['@', '@var_log', '@var_cache', '@.snapshots', '@home', '@home_snapshots']
	assert applied_ops.calls_of('set_nocow') == [('set_nocow', '/run/archprovision/btrfs/@var_cache')]

	assert applied_ops.get_fstype(Path('/dev/nvme0n1p1')) == 'vfat'
	assert applied_ops.get_fstype(Path('/dev/nvme1n1p2')) == 'crypto_LUKS'
	assert applied_ops.get_fstype(Path('/dev/mapper/home_encrypted')) == 'btrfs'
	assert applied_ops.get_fstype(Path('/dev/sda1')) == 'swap'

	root = applied_ops.blocks[Path('/dev/nvme0n1p2')].filesystem
	assert root is not None and root.features is not None
	assert root.features.nodesize == 16384

	# the scratch mount point is released again
	assert Path('/run/archprovision/btrfs') not in [m.target for m in applied_ops.mounts]


def test_fstab_is_written_parents_first(applied_ops: InMemoryDeviceOperations, target: Path) -> None:
	entries = read_fstab(target / 'etc/fstab')

	assert [e.mountpoint for e in entries] == [*MOUNT_ORDER, 'none']
	assert all(e.uuid for e in entries)

	root = entries[0]
	assert root.uuid == applied_ops.get_uuid(Path('/dev/nvme0n1p2'))
	assert root.subvolume == '@'
	assert root.passno == 1

	home = entries[MOUNT_ORDER.index('/home')]
	assert home.uuid == applied_ops.get_uuid(Path('/dev/mapper/home_encrypted'))
	assert home.passno == 0

	boot = entries[MOUNT_ORDER.index('/boot')]
	assert boot.fstype == 'vfat'
	assert boot.options == ('umask=0077',)
	assert boot.passno == 2

	swap = entries[-1]
	assert swap.is_swap
	assert swap.uuid == applied_ops.get_uuid(Path('/dev/sda1'))


def test_crypttab_references_luks_containers(applied_ops: InMemoryDeviceOperations, target: Path, passphrase: str) -> None:
	crypttab = target / 'etc/crypttab'
	lines = [line for line in crypttab.read_text().splitlines() if not line.startswith('#')]

	assert lines == [
		f'workspace_encrypted\tUUID={applied_ops.get_uuid(Path("/dev/nvme1n1p1"))}\tnone\tluks',
		f'home_encrypted\tUUID={applied_ops.get_uuid(Path("/dev/nvme1n1p2"))}\tnone\tluks',
	]
	assert crypttab.stat().st_mode & 0o777 == 0o600
	assert passphrase not in crypttab.read_text()


def test_no_confirmation_touches_nothing(device_ops: InMemoryDeviceOperations, three_disk_plan: ProvisionPlan, target: Path) -> None:
	with pytest.raises(DestructiveOperationRefused):
		_executor(device_ops, target).apply(three_disk_plan, None)

	assert device_ops.mutations() == []


def test_partial_confirmation_touches_nothing(
	device_ops: InMemoryDeviceOperations,
	three_disk_plan: ProvisionPlan,
	target: Path,
	passphrase_provider: Callable[[EncryptionSpec], str],
) -> None:
	token = ConfirmationToken.for_devices(Path('/dev/nvme0n1'), Path('/dev/sda'))

	with pytest.raises(DestructiveOperationRefused) as err:
		_executor(device_ops, target).apply(three_disk_plan, token, passphrase_provider=passphrase_provider)

	assert '/dev/nvme1n1' in err.value.message
	assert err.value.step == 'preflight'
	assert device_ops.mutations() == []


def test_missing_passphrase_source_touches_nothing(
	device_ops: InMemoryDeviceOperations,
	three_disk_plan: ProvisionPlan,
	target: Path,
) -> None:
	with pytest.raises(ExecutionError) as err:
		_executor(device_ops, target).apply(three_disk_plan, ConfirmationToken.for_plan(three_disk_plan))

	assert err.value.step == 'preflight'
	assert device_ops.mutations() == []


def test_passphrases_are_requested_once_per_mapper(
	device_ops: InMemoryDeviceOperations,
	three_disk_plan: ProvisionPlan,
	target: Path,
	passphrase: str,
) -> None:
	requested: list[str] = []

	def _provider(spec: EncryptionSpec) -> str:
		requested.append(spec.mapper_name)
		return passphrase

	_executor(device_ops, target).apply(three_disk_plan, ConfirmationToken.for_plan(three_disk_plan), passphrase_provider=_provider)

	assert requested == ['workspace_encrypted', 'home_encrypted']


def test_existing_luks_requires_force(
	device_ops: InMemoryDeviceOperations,
	three_disk_plan: ProvisionPlan,
	target: Path,
	passphrase_provider: Callable[[EncryptionSpec], str],
) -> None:
	old = Path('/dev/nvme1n1p1')
	device_ops.blocks[old] = FakeBlock(
		path=old,
		size=Size(1024, Unit.GiB),
		parent=Path('/dev/nvme1n1'),
		number=1,
		luks_uuid='old-luks-uuid',
		luks_passphrase='old',
	)
	token = ConfirmationToken.for_plan(three_disk_plan)

	with pytest.raises(DestructiveOperationRefused) as err:
		_executor(device_ops, target).apply(three_disk_plan, token, passphrase_provider=passphrase_provider)

	assert err.value.command == ['cryptsetup', 'isLuks', str(old)]
	assert device_ops.mutations() == []

	_executor(device_ops, target).apply(three_disk_plan, token, force=True, passphrase_provider=passphrase_provider)

	assert device_ops.get_uuid(old) != 'old-luks-uuid'
	assert len(device_ops.calls_of('luks_format')) == 2


def test_partitions_that_never_appear(
	three_disk_plan: ProvisionPlan,
	target: Path,
	passphrase_provider: Callable[[EncryptionSpec], str],
) -> None:
	ops = InMemoryDeviceOperations(
		{
			Path('/dev/nvme0n1'): Size(512, Unit.GiB),
			Path('/dev/nvme1n1'): Size(2, Unit.TiB),
			Path('/dev/sda'): Size(256, Unit.GiB),
		},
		settle_polls=100,
	)

	with pytest.raises(PartitionNotReadyError) as err:
		_executor(ops, target, settle_attempts=3).apply(
			three_disk_plan,
			ConfirmationToken.for_plan(three_disk_plan),
			passphrase_provider=passphrase_provider,
		)

	assert err.value.step == 'settle:/dev/nvme0n1'
	assert err.value.remediation
	assert ops.calls_of('mkfs') == []
	assert [c[1] for c in ops.calls_of('wipe_signatures')] == ['/dev/nvme0n1']


def test_slow_partitions_are_waited_for(
	three_disk_plan: ProvisionPlan,
	target: Path,
	passphrase_provider: Callable[[EncryptionSpec], str],
) -> None:
	ops = InMemoryDeviceOperations(
		{
			Path('/dev/nvme0n1'): Size(512, Unit.GiB),
			Path('/dev/nvme1n1'): Size(2, Unit.TiB),
			Path('/dev/sda'): Size(256, Unit.GiB),
		},
		settle_polls=2,
	)
	sleeps: list[float] = []

	executor = Executor(ops, target=target, sleep=sleeps.append, settle_interval=0.25)
	executor.apply(three_disk_plan, ConfirmationToken.for_plan(three_disk_plan), passphrase_provider=passphrase_provider)

	assert len(ops.mounts) == len(MOUNT_ORDER)
	assert sleeps and set(sleeps) == {0.25}


def test_mount_failure_stops_the_mount_phase(
	device_ops: InMemoryDeviceOperations,
	three_disk_plan: ProvisionPlan,
	target: Path,
	passphrase_provider: Callable[[EncryptionSpec], str],
) -> None:
	device_ops.failing_mounts = {target / 'home'}

	with pytest.raises(MountFailure) as err:
		_executor(device_ops, target).apply(
			three_disk_plan,
			ConfirmationToken.for_plan(three_disk_plan),
			passphrase_provider=passphrase_provider,
		)

	assert err.value.failed == ['mount:/home']
	assert err.value.pending == [
		'mount:/var/log',
		'mount:/var/cache',
		'mount:/home/.snapshots',
		'mount:/var/cache/dev',
		'swapon:SWAP',
	]
	assert err.value.command[0] == 'mount'

	# retried before giving up
	assert len([c for c in device_ops.calls_of('mount') if c[2] == str(target / 'home')]) == 3

	# what was mounted stays mounted
	assert [m.target for m in device_ops.mounts] == [target / mp.lstrip('/') for mp in MOUNT_ORDER[:4]]
	assert not (target / 'etc/fstab').exists()


def test_dry_run_changes_nothing(device_ops: InMemoryDeviceOperations, three_disk_plan: ProvisionPlan, target: Path) -> None:
	steps = _executor(device_ops, target).dry_run(three_disk_plan)
	keys = [s.key for s in steps]

	assert device_ops.mutations() == []
	assert keys[:3] == ['wipe:/dev/nvme0n1', 'partition:/dev/nvme0n1', 'settle:/dev/nvme0n1']
	assert keys.index('fstab:compose') < keys.index('mount:/')
	assert keys.index('mount:/') < keys.index('mount:/home') < keys.index('mount:/home/.snapshots')
	assert keys[-2:] == ['fstab:write', 'caches']
	assert {s.key for s in steps if s.destructive} >= {'wipe:/dev/sda', 'format:HOME'}
	assert not (target / 'etc/fstab').exists()


def test_second_apply_is_refused_while_mounted(
	applied_ops: InMemoryDeviceOperations,
	three_disk_plan: ProvisionPlan,
	target: Path,
	passphrase_provider: Callable[[EncryptionSpec], str],
) -> None:
	before = len(applied_ops.mutations())

	with pytest.raises(DeviceBusyError):
		_executor(applied_ops, target).apply(
			three_disk_plan,
			ConfirmationToken.for_plan(three_disk_plan),
			passphrase_provider=passphrase_provider,
		)

	assert len(applied_ops.mutations()) == before


def test_mapping_open_on_a_foreign_device_is_refused(
	device_ops: InMemoryDeviceOperations,
	three_disk_plan: ProvisionPlan,
	target: Path,
	passphrase_provider: Callable[[EncryptionSpec], str],
) -> None:
	foreign = Path('/dev/sdz1')
	device_ops.add_disk(Path('/dev/sdz'), Size(64, Unit.GiB))
	device_ops.blocks[foreign] = FakeBlock(
		path=foreign,
		size=Size(64, Unit.GiB) - Size(1, Unit.MiB),
		parent=Path('/dev/sdz'),
		number=1,
		luks_uuid='foreign-luks-uuid',
		luks_passphrase='foreign',
		inner=FakeFilesystem('btrfs', 'foreign-uuid', 'PRECIOUS'),
	)
	device_ops.mappers['home_encrypted'] = foreign

	with pytest.raises(DeviceBusyError) as err:
		_executor(device_ops, target).apply(
			three_disk_plan,
			ConfirmationToken.for_plan(three_disk_plan),
			passphrase_provider=passphrase_provider,
		)

	assert err.value.step == 'preflight'
	assert str(foreign) in err.value.message
	assert err.value.command == ['cryptsetup', 'status', 'home_encrypted']
	assert device_ops.mutations() == []

	inner = device_ops.blocks[foreign].inner
	assert inner is not None
	assert inner.label == 'PRECIOUS'
	assert device_ops.mappers == {'home_encrypted': foreign}


class _UnlockFailsInMountPhase(InMemoryDeviceOperations):
	"""
	Unlocking works while formatting and fails once the mount phase
	opens the containers again.
	"""

	def luks_open(self, partition: Path, mapper_name: str, passphrase: str) -> Path:
		if len(self.calls_of('luks_open')) >= 3:
			self._record('luks_open', partition, mapper_name)
			raise DiskError(
				f'Failed to open {partition}: No key available with this passphrase.',
				command=['cryptsetup', 'open', str(partition), mapper_name, '--type', 'luks2'],
			)

		return super().luks_open(partition, mapper_name, passphrase)


def test_provision_error_in_mount_phase_is_a_mount_failure(
	three_disk_plan: ProvisionPlan,
	target: Path,
	passphrase_provider: Callable[[EncryptionSpec], str],
) -> None:
	ops = _UnlockFailsInMountPhase(
		{
			Path('/dev/nvme0n1'): Size(512, Unit.GiB),
			Path('/dev/nvme1n1'): Size(2, Unit.TiB),
			Path('/dev/sda'): Size(256, Unit.GiB),
		}
	)

	with pytest.raises(MountFailure) as err:
		_executor(ops, target).apply(
			three_disk_plan,
			ConfirmationToken.for_plan(three_disk_plan),
			passphrase_provider=passphrase_provider,
		)

	assert err.value.failed == ['mount:/workspace']
	assert err.value.pending == [
		'mount:/.snapshots',
		'mount:/home',
		'mount:/var/log',
		'mount:/var/cache',
		'mount:/home/.snapshots',
		'mount:/var/cache/dev',
		'swapon:SWAP',
	]
	assert err.value.command is not None
	assert err.value.command[:2] == ['cryptsetup', 'open']
	assert isinstance(err.value.__cause__, DiskError)

	assert [m.target for m in ops.mounts] == [target, target / 'boot']
	assert not (target / 'etc/fstab').exists()


class _ScratchMountFails(InMemoryDeviceOperations):
	def mount(self, source: Path, target: Path, fstype: str | None = None, options: list[str] | None = None) -> None:
		if source == Path('/dev/mapper/home_encrypted'):
			self.failing_mounts.add(target)

		super().mount(source, target, fstype, options)


def test_mapping_is_closed_when_the_scratch_mount_fails(
	three_disk_plan: ProvisionPlan,
	target: Path,
	passphrase_provider: Callable[[EncryptionSpec], str],
) -> None:
	ops = _ScratchMountFails(
		{
			Path('/dev/nvme0n1'): Size(512, Unit.GiB),
			Path('/dev/nvme1n1'): Size(2, Unit.TiB),
			Path('/dev/sda'): Size(256, Unit.GiB),
		}
	)

	with pytest.raises(ExecutionError) as err:
		_executor(ops, target).apply(
			three_disk_plan,
			ConfirmationToken.for_plan(three_disk_plan),
			passphrase_provider=passphrase_provider,
		)

	assert err.value.step == 'subvolumes:HOME'
	assert ops.mappers == {}
	assert ops.mounts == []
	assert ops.calls_of('luks_close')[-1] == ('luks_close', 'home_encrypted')


@pytest.mark.parametrize(
	'subvolume_order, mount_order',
	[
		([5, 4, 3, 2, 1, 0], [3, 2, 1, 0]),
		([5, 2, 4, 0, 3, 1], [3, 2, 0, 1]),
	],
)
def test_fstab_order_does_not_depend_on_declaration_order(
	three_disk_plan_fixture: Path,
	device_ops: InMemoryDeviceOperations,
	target: Path,
	passphrase_provider: Callable[[EncryptionSpec], str],
	subvolume_order: list[int],
	mount_order: list[int],
) -> None:
	data = json.loads(three_disk_plan_fixture.read_text())
	data['subvolumes'] = [data['subvolumes'][i] for i in subvolume_order]
	data['mounts'] = [data['mounts'][i] for i in mount_order]
	plan = ProvisionPlan.model_validate(data)

	_executor(device_ops, target).apply(plan, ConfirmationToken.for_plan(plan), passphrase_provider=passphrase_provider)

	mountpoints = [e.mountpoint for e in read_fstab(target / 'etc/fstab')]

	assert mountpoints[0] == '/'
	assert mountpoints[-1] == 'none'
	assert sorted(mountpoints[:-1]) == sorted(MOUNT_ORDER)

	for index, mountpoint in enumerate(mountpoints):
		for parent in Path(mountpoint).parents:
			if str(parent) in mountpoints:
				assert mountpoints.index(str(parent)) < index, f'{parent} is listed after {mountpoint}'

	mounted = [m.target for m in device_ops.mounts]
	assert sorted(mounted) == sorted(target / mp.lstrip('/') for mp in MOUNT_ORDER)

	for index, path in enumerate(mounted):
		assert all(mounted.index(parent) < index for parent in path.parents if parent in mounted)
