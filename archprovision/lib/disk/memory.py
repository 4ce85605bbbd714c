from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import override

from ..exceptions import DiskError, SysCallError
from ..models.device import CRYPTO_LUKS, FilesystemType, MountInfo, Size
from ..models.plan import BtrfsFeatures, EncryptionSpec
from .operations import MUTATING_OPERATIONS, DeviceOperations
from .utils import partition_path

_MAPPER_DIR = Path('/dev/mapper')


@dataclass
class FakeFilesystem:
	fstype: str
	uuid: str
	label: str
	features: BtrfsFeatures | None = None
	# directories per subvolume as '/' joined relative paths, '' is the top level
	entries: dict[str, set[str]] = field(default_factory=lambda: {'': set()})
	subvolumes: list[str] = field(default_factory=list)
	nocow: set[str] = field(default_factory=set)


@dataclass
class FakeBlock:
	path: Path
	size: Size
	parent: Path | None = None
	number: int | None = None
	label: str | None = None
	table: str | None = None
	esp: bool = False
	filesystem: FakeFilesystem | None = None
	luks_uuid: str | None = None
	luks_passphrase: str | None = None
	inner: FakeFilesystem | None = None
	# None: node visible, -1: kernel not told yet, n: polls left until visible
	ready_after: int | None = None


class InMemoryDeviceOperations(DeviceOperations):
	"""
	Simulated block devices for tests and dry runs. Every call is
	recorded in `calls` as a tuple of the operation name and its
	arguments rendered as strings.
	"""

	def __init__(
		self,
		disks: dict[Path, Size] | None = None,
		settle_polls: int = 0,
	) -> None:
		self.blocks: dict[Path, FakeBlock] = {}
		self.mappers: dict[str, Path] = {}
		self.mounts: list[MountInfo] = []
		self.swaps: list[Path] = []
		self.directories: set[Path] = {Path('/')}
		self.owners: dict[Path, str] = {}
		self.calls: list[tuple[str, ...]] = []
		self.failing_mounts: set[Path] = set()
		self.settle_polls = settle_polls

		self._mounted_fs: dict[Path, tuple[FakeFilesystem, str | None]] = {}
		self._uuid_counter = 0

		for path, size in (disks or {}).items():
			self.add_disk(path, size)

	def add_disk(self, path: Path, size: Size) -> FakeBlock:
		block = FakeBlock(path=path, size=size)
		self.blocks[path] = block
		return block

	def mutations(self) -> list[tuple[str, ...]]:
		return [call for call in self.calls if call[0] in MUTATING_OPERATIONS]

	def calls_of(self, name: str) -> list[tuple[str, ...]]:
		return [call for call in self.calls if call[0] == name]

	def _record(self, name: str, *args: object) -> None:
		self.calls.append((name, *[str(a) for a in args]))

	def _fail(self, cmd: list[str], message: str, exit_code: int = 32) -> SysCallError:
		return SysCallError(message, exit_code, worker_log=message.encode(), cmd=cmd)

	def _new_uuid(self) -> str:
		self._uuid_counter += 1
		n = self._uuid_counter
		return f'{n:08x}-0000-4000-8000-{n:012x}'

	def _block(self, path: Path) -> FakeBlock:
		if block := self.blocks.get(path):
			return block
		raise DiskError(f'No such block device: {path}')

	def _partitions_of(self, device: Path) -> list[FakeBlock]:
		return [b for b in self.blocks.values() if b.parent == device]

	def _filesystem(self, path: Path) -> FakeFilesystem | None:
		if path.parent == _MAPPER_DIR:
			if partition := self.mappers.get(path.name):
				return self.blocks[partition].inner
			return None

		if block := self.blocks.get(path):
			return block.filesystem
		return None

	def _resolve(self, path: Path) -> tuple[FakeFilesystem, str, tuple[str, ...]] | None:
		"""
		Finds the mounted filesystem holding path, the subvolume
		it lives in and the remaining path components.
		"""
		targets = [t for t in self._mounted_fs if t == path or t in path.parents]

		if not targets:
			return None

		target = max(targets, key=lambda t: len(t.parts))
		fs, subvol = self._mounted_fs[target]
		rel = path.relative_to(target).parts
		key = subvol or ''

		if not subvol and rel and rel[0] in fs.subvolumes:
			key, rel = rel[0], rel[1:]

		return fs, key, rel

	@override
	def block_device_exists(self, path: Path) -> bool:
		self._record('block_device_exists', path)

		if path.parent == _MAPPER_DIR:
			return path.name in self.mappers

		block = self.blocks.get(path)
		if block is None:
			return False

		if block.ready_after is None:
			return True
		if block.ready_after <= 0:
			if block.ready_after == 0:
				block.ready_after = None
				return True
			return False

		block.ready_after -= 1
		return False

	@override
	def device_size(self, path: Path) -> Size:
		return self._block(path).size

	@override
	def is_mounted(self, device: Path) -> bool:
		paths = {device} | {p.path for p in self._partitions_of(device)}
		paths |= {_MAPPER_DIR / name for name, part in self.mappers.items() if part in paths}

		sources = {Path(m.source) for m in self.mounts}
		return bool(paths & sources) or bool(paths & set(self.swaps))

	@override
	def is_luks(self, path: Path) -> bool:
		block = self.blocks.get(path)
		return block is not None and block.luks_uuid is not None

	@override
	def is_mapper_open(self, mapper_name: str) -> bool:
		return mapper_name in self.mappers

	@override
	def mapper_backing_device(self, mapper_name: str) -> Path | None:
		return self.mappers.get(mapper_name)

	@override
	def get_uuid(self, path: Path) -> str | None:
		block = self.blocks.get(path)
		if block is not None and block.luks_uuid is not None:
			return block.luks_uuid

		if fs := self._filesystem(path):
			return fs.uuid
		return None

	@override
	def get_fstype(self, path: Path) -> str | None:
		block = self.blocks.get(path)
		if block is not None and block.luks_uuid is not None:
			return CRYPTO_LUKS

		if fs := self._filesystem(path):
			return fs.fstype
		return None

	@override
	def list_mounts(self) -> list[MountInfo]:
		return list(self.mounts)

	@override
	def list_swaps(self) -> list[Path]:
		return list(self.swaps)

	@override
	def list_subvolumes(self, mountpoint: Path) -> list[str]:
		if mountpoint not in self._mounted_fs:
			raise self._fail(['btrfs', 'subvolume', 'list', str(mountpoint)], f'{mountpoint} is not mounted')

		fs, _ = self._mounted_fs[mountpoint]

		if fs.fstype != FilesystemType.Btrfs.value:
			raise self._fail(['btrfs', 'subvolume', 'list', str(mountpoint)], f'{mountpoint} is not a btrfs filesystem')

		return list(fs.subvolumes)

	@override
	def is_directory(self, path: Path) -> bool:
		if path in self._mounted_fs:
			return True

		if resolved := self._resolve(path):
			fs, key, rel = resolved
			return len(rel) == 0 or '/'.join(rel) in fs.entries[key]

		return path in self.directories

	@override
	def list_directory(self, path: Path) -> list[str]:
		if resolved := self._resolve(path):
			fs, key, rel = resolved
			names = set()

			for entry in fs.entries[key]:
				parts = tuple(entry.split('/'))
				if len(parts) > len(rel) and parts[: len(rel)] == rel:
					names.add(parts[len(rel)])

			if key == '' and not rel:
				names |= set(fs.subvolumes)

			return sorted(names)

		return sorted(p.name for p in self.directories if p.parent == path and p != path)

	@override
	def wipe_signatures(self, device: Path) -> None:
		self._record('wipe_signatures', device)
		block = self._block(device)

		if self.is_mounted(device):
			raise self._fail(['wipefs', '-af', str(device)], f'{device}: probing initialization failed: Device or resource busy')

		block.table = None
		block.filesystem = None
		block.luks_uuid = None

	@override
	def create_partition_table(self, device: Path, table: str) -> None:
		self._record('create_partition_table', device, table)
		block = self._block(device)

		for part in self._partitions_of(device):
			del self.blocks[part.path]

		block.table = table

	@override
	def create_partition(self, device: Path, label: str, fs_type: FilesystemType, start: Size, end: Size) -> None:
		self._record('create_partition', device, label, fs_type.parted_value, start.to_mib(), end.to_mib())
		block = self._block(device)
		cmd = ['parted', '-s', str(device), 'mkpart', label, fs_type.parted_value, f'{start.to_mib()}MiB', f'{end.to_mib()}MiB']

		if block.table is None:
			raise self._fail(cmd, f'Error: {device}: unrecognised disk label')
		if end > block.size:
			raise self._fail(cmd, 'Error: The location is outside of the device')

		number = len(self._partitions_of(device)) + 1
		path = partition_path(device, number)

		self.blocks[path] = FakeBlock(
			path=path,
			size=end - start,
			parent=device,
			number=number,
			label=label,
			ready_after=-1,
		)

	@override
	def set_esp(self, device: Path, number: int) -> None:
		self._record('set_esp', device, number)
		self._block(partition_path(device, number)).esp = True

	@override
	def reread_partitions(self, device: Path) -> None:
		self._record('reread_partitions', device)

		for part in self._partitions_of(device):
			if part.ready_after == -1:
				part.ready_after = self.settle_polls

	@override
	def luks_format(self, partition: Path, spec: EncryptionSpec, passphrase: str) -> None:
		self._record('luks_format', partition, spec.mapper_name, spec.cipher, spec.key_size, spec.hash)
		block = self._block(partition)

		block.filesystem = None
		block.inner = None
		block.luks_uuid = self._new_uuid()
		block.luks_passphrase = passphrase

	@override
	def luks_open(self, partition: Path, mapper_name: str, passphrase: str) -> Path:
		self._record('luks_open', partition, mapper_name)
		block = self._block(partition)
		cmd = ['cryptsetup', 'open', str(partition), mapper_name, '--type', 'luks2']

		if block.luks_uuid is None:
			raise self._fail(cmd, f'Device {partition} is not a valid LUKS device.', 1)
		if block.luks_passphrase != passphrase:
			raise self._fail(cmd, 'No key available with this passphrase.', 2)
		if mapper_name in self.mappers:
			raise self._fail(cmd, f'Device {mapper_name} already exists.', 5)

		self.mappers[mapper_name] = partition
		return _MAPPER_DIR / mapper_name

	@override
	def luks_close(self, mapper_name: str) -> None:
		self._record('luks_close', mapper_name)
		mapper = _MAPPER_DIR / mapper_name
		cmd = ['cryptsetup', 'close', mapper_name]

		if mapper_name not in self.mappers:
			raise self._fail(cmd, f'Device {mapper_name} is not active.', 4)
		if any(Path(m.source) == mapper for m in self.mounts) or mapper in self.swaps:
			raise self._fail(cmd, f'Device {mapper_name} is still in use.', 5)

		del self.mappers[mapper_name]

	@override
	def mkfs(self, path: Path, fs_type: FilesystemType, label: str, features: BtrfsFeatures | None = None) -> None:
		self._record('mkfs', path, fs_type.value, label)
		fs = FakeFilesystem(fs_type.blkid_value, self._new_uuid(), label, features)

		if path.parent == _MAPPER_DIR:
			if path.name not in self.mappers:
				raise self._fail([fs_type.installation_binary, str(path)], f'{path}: No such file or directory', 1)
			self.blocks[self.mappers[path.name]].inner = fs
			return

		block = self._block(path)
		block.filesystem = fs
		block.luks_uuid = None
		block.inner = None

	@override
	def create_subvolume(self, mountpoint: Path, name: str) -> None:
		self._record('create_subvolume', mountpoint, name)
		cmd = ['btrfs', 'subvolume', 'create', str(mountpoint / name)]
		resolved = self._resolve(mountpoint)

		if resolved is None or resolved[1] != '' or resolved[2]:
			raise self._fail(cmd, f'ERROR: {mountpoint} is not the top level of a mounted btrfs filesystem', 1)

		fs = resolved[0]
		if fs.fstype != FilesystemType.Btrfs.value:
			raise self._fail(cmd, f'ERROR: not a btrfs filesystem: {mountpoint}', 1)
		if name in fs.subvolumes or name in fs.entries['']:
			raise self._fail(cmd, f"ERROR: target path already exists: {mountpoint / name}", 1)

		fs.subvolumes.append(name)
		fs.entries[name] = set()

	@override
	def set_nocow(self, path: Path) -> None:
		self._record('set_nocow', path)
		resolved = self._resolve(path)

		if resolved is None:
			raise self._fail(['chattr', '+C', str(path)], f'chattr: No such file or directory while trying to stat {path}', 1)

		fs, key, rel = resolved
		fs.nocow.add('/'.join((key, *rel)))

	@override
	def mount(self, source: Path, target: Path, fstype: str | None = None, options: list[str] | None = None) -> None:
		options = options or []
		self._record('mount', source, target, fstype or '', ','.join(options))
		cmd = ['mount']

		if options:
			cmd += ['-o', ','.join(options)]
		if fstype:
			cmd += ['-t', fstype]
		cmd += [str(source), str(target)]

		if target in self.failing_mounts:
			raise self._fail(cmd, f'mount: {target}: wrong fs type, bad option, bad superblock on {source}')
		if not self.is_directory(target):
			raise self._fail(cmd, f'mount: {target}: mount point does not exist.')

		fs = self._filesystem(source)
		if fs is None or fs.fstype == FilesystemType.Swap.value:
			raise self._fail(cmd, f'mount: {target}: wrong fs type, bad option, bad superblock on {source}')
		if fstype and fstype != fs.fstype:
			raise self._fail(cmd, f'mount: {target}: unknown filesystem type {fstype}')

		subvol = None
		for option in options:
			if option.startswith('subvol='):
				subvol = option.removeprefix('subvol=').lstrip('/')

		if subvol is not None and subvol not in fs.subvolumes:
			raise self._fail(cmd, f'mount: {target}: subvolume {subvol} does not exist on {source}')

		self.mounts.append(
			MountInfo(
				source=str(source),
				target=target,
				fstype=fs.fstype,
				options=['rw', *[o for o in options if o != 'defaults']],
				fsroot=f'/{subvol}' if subvol else '/',
			)
		)
		self._mounted_fs[target] = (fs, subvol)

	@override
	def umount(self, target: Path) -> None:
		self._record('umount', target)
		cmd = ['umount', str(target)]

		matches = [m for m in self.mounts if m.target == target]
		if not matches:
			raise self._fail(cmd, f'umount: {target}: not mounted.')
		if any(target in m.target.parents for m in self.mounts):
			raise self._fail(cmd, f'umount: {target}: target is busy.')

		self.mounts.remove(matches[-1])
		del self._mounted_fs[target]

	@override
	def swapon(self, path: Path) -> None:
		self._record('swapon', path)
		fs = self._filesystem(path)

		if fs is None or fs.fstype != FilesystemType.Swap.value:
			raise self._fail(['swapon', str(path)], f'swapon: {path}: read swap header failed', 255)
		if path in self.swaps:
			raise self._fail(['swapon', str(path)], f'swapon: {path}: swapon failed: Device or resource busy', 255)

		self.swaps.append(path)

	@override
	def make_directory(self, path: Path, owner: str | None = None) -> None:
		self._record('make_directory', path, owner or '')

		if resolved := self._resolve(path):
			fs, key, rel = resolved
			for depth in range(1, len(rel) + 1):
				fs.entries[key].add('/'.join(rel[:depth]))

		# directories below a mount point live on the mounted filesystem
		for parent in [path, *path.parents]:
			if not any(target in parent.parents for target in self._mounted_fs):
				self.directories.add(parent)

		if owner:
			self.owners[path] = owner

	@override
	def move(self, source: Path, destination: Path) -> None:
		self._record('move', source, destination)
		cmd = ['mv', str(source), str(destination)]

		src = self._resolve(source)
		dst = self._resolve(destination.parent)

		if not self.is_directory(source) or (src is not None and not src[2]):
			raise self._fail(cmd, f"mv: cannot stat '{source}': No such file or directory", 1)
		if dst is None or not self.is_directory(destination.parent) or self.is_directory(destination):
			raise self._fail(cmd, f"mv: cannot move '{source}' to '{destination}'", 1)

		# source and everything below it, relative to source
		if src is not None:
			fs, key, rel = src
			prefix = '/'.join(rel)
			below = {e for e in fs.entries[key] if e == prefix or e.startswith(prefix + '/')}
			fs.entries[key] -= below
			suffixes = [e.removeprefix(prefix) for e in below]
		else:
			below_dirs = {p for p in self.directories if p == source or source in p.parents}
			self.directories -= below_dirs
			suffixes = ['' if p == source else f'/{p.relative_to(source)}' for p in below_dirs]

		fs, key, rel = dst
		base = '/'.join((*rel, destination.name))
		fs.entries[key] |= {base + suffix for suffix in suffixes}
