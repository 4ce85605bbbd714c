import logging
import os
import shutil
from pathlib import Path
from typing import override

from ..exceptions import SysCallError
from ..general import SysCommand
from ..models.device import FilesystemType, MountInfo, Size
from ..models.plan import BtrfsFeatures, EncryptionSpec
from ..output import debug, error, info, log
from .luks import Luks2
from .operations import DeviceOperations
from .utils import get_lsblk_info, get_mounts


class SystemDeviceOperations(DeviceOperations):
	"""
	Device operations backed by the real system tools.
	"""

	@override
	def block_device_exists(self, path: Path) -> bool:
		return path.is_block_device()

	@override
	def device_size(self, path: Path) -> Size:
		return get_lsblk_info(path).size

	@override
	def is_mounted(self, device: Path) -> bool:
		return len(get_lsblk_info(device).all_mountpoints()) > 0

	@override
	def is_luks(self, path: Path) -> bool:
		return Luks2(path).isLuks()

	@override
	def is_mapper_open(self, mapper_name: str) -> bool:
		return Luks2(Path(), mapper_name).is_unlocked()

	@override
	def mapper_backing_device(self, mapper_name: str) -> Path | None:
		return Luks2(Path(), mapper_name).backing_device()

	def _blkid(self, path: Path, tag: str) -> str | None:
		try:
			value = SysCommand(['blkid', '-s', tag, '-o', 'value', str(path)]).decode()
		except SysCallError as err:
			# blkid exits with 2 when the tag is not present
			if err.exit_code == 2:
				return None
			raise err

		return value or None

	@override
	def get_uuid(self, path: Path) -> str | None:
		return self._blkid(path, 'UUID')

	@override
	def get_fstype(self, path: Path) -> str | None:
		return self._blkid(path, 'TYPE')

	@override
	def list_mounts(self) -> list[MountInfo]:
		return get_mounts()

	@override
	def list_swaps(self) -> list[Path]:
		output = SysCommand(['swapon', '--show=NAME', '--noheadings', '--raw']).decode()
		return [Path(line) for line in output.splitlines() if line.strip()]

	@override
	def list_subvolumes(self, mountpoint: Path) -> list[str]:
		output = SysCommand(['btrfs', 'subvolume', 'list', str(mountpoint)]).decode()
		subvolumes = []

		# ID 256 gen 7 top level 5 path @home
		for line in output.splitlines():
			if ' path ' in line:
				subvolumes.append(line.split(' path ', 1)[1].strip())

		return subvolumes

	@override
	def is_directory(self, path: Path) -> bool:
		return path.is_dir()

	@override
	def list_directory(self, path: Path) -> list[str]:
		return sorted(os.listdir(path))

	@override
	def wipe_signatures(self, device: Path) -> None:
		info(f'Wiping signatures: {device}')
		SysCommand(['wipefs', '-af', str(device)])

	@override
	def create_partition_table(self, device: Path, table: str) -> None:
		info(f'Creating {table} partition table on {device}')
		SysCommand(['parted', '-s', str(device), 'mklabel', table])

	@override
	def create_partition(self, device: Path, label: str, fs_type: FilesystemType, start: Size, end: Size) -> None:
		debug(f'Creating partition {label} on {device}: {start.to_mib()}MiB - {end.to_mib()}MiB')

		SysCommand(
			[
				'parted',
				'-s',
				str(device),
				'mkpart',
				label,
				fs_type.parted_value,
				f'{start.to_mib()}MiB',
				f'{end.to_mib()}MiB',
			]
		)

	@override
	def set_esp(self, device: Path, number: int) -> None:
		SysCommand(['parted', '-s', str(device), 'set', str(number), 'esp', 'on'])

	@override
	def reread_partitions(self, device: Path) -> None:
		command = ['partprobe', str(device)]

		try:
			debug(f'Calling partprobe: {device}')
			SysCommand(command)
		except SysCallError as err:
			if 'have been written, but we have been unable to inform the kernel of the change' in str(err):
				log(f'Partprobe was not able to inform the kernel of the new disk state (ignoring error): {err}', fg='gray', level=logging.INFO)
			else:
				error(f'"{" ".join(command)}" failed to run (continuing anyway): {err}')

		try:
			SysCommand(['udevadm', 'settle'])
		except SysCallError as err:
			debug(f'Failed to synchronize with udev: {err}')

	@override
	def luks_format(self, partition: Path, spec: EncryptionSpec, passphrase: str) -> None:
		Luks2(partition, spec.mapper_name, passphrase).encrypt(spec)

	@override
	def luks_open(self, partition: Path, mapper_name: str, passphrase: str) -> Path:
		return Luks2(partition, mapper_name, passphrase).unlock()

	@override
	def luks_close(self, mapper_name: str) -> None:
		Luks2(Path(), mapper_name).lock()

	@override
	def mkfs(self, path: Path, fs_type: FilesystemType, label: str, features: BtrfsFeatures | None = None) -> None:
		match fs_type:
			case FilesystemType.Vfat:
				cmd = [fs_type.installation_binary, '-F32', '-n', label]
			case FilesystemType.Btrfs:
				features = features or BtrfsFeatures()
				cmd = [fs_type.installation_binary, '-f', '-L', label, '--csum', features.checksum]

				if features.features:
					cmd += ['--features', ','.join(features.features)]
				if features.nodesize:
					cmd += ['--nodesize', str(features.nodesize)]
			case FilesystemType.Swap:
				cmd = [fs_type.installation_binary, '-L', label]

		cmd.append(str(path))

		info(f'Formatting {path} as {fs_type.value}')
		SysCommand(cmd)

	@override
	def create_subvolume(self, mountpoint: Path, name: str) -> None:
		debug(f'Creating subvolume: {name}')
		SysCommand(['btrfs', 'subvolume', 'create', str(mountpoint / name)])

	@override
	def set_nocow(self, path: Path) -> None:
		SysCommand(['chattr', '+C', str(path)])

	@override
	def mount(self, source: Path, target: Path, fstype: str | None = None, options: list[str] | None = None) -> None:
		options = options or []
		cmd = ['mount']

		if len(options):
			cmd.extend(('-o', ','.join(options)))
		if fstype:
			cmd.extend(('-t', fstype))

		cmd.extend((str(source), str(target)))

		debug(f'Mounting {source} at {target}')
		SysCommand(cmd)

	@override
	def umount(self, target: Path) -> None:
		debug(f'Unmounting mountpoint: {target}')
		SysCommand(['umount', str(target)])

	@override
	def swapon(self, path: Path) -> None:
		SysCommand(['swapon', str(path)])

	@override
	def make_directory(self, path: Path, owner: str | None = None) -> None:
		path.mkdir(parents=True, exist_ok=True)

		if owner:
			shutil.chown(path, user=owner)

	@override
	def move(self, source: Path, destination: Path) -> None:
		shutil.move(source, destination)
