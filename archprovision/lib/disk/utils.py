from pathlib import Path

from pydantic import BaseModel

from ..exceptions import DiskError, SysCallError
from ..general import SysCommand
from ..models.device import FindmntOutput, LsblkInfo, MountInfo
from ..output import debug, warn


class LsblkOutput(BaseModel):
	blockdevices: list[LsblkInfo]


def _fetch_lsblk_info(
	dev_path: Path | str | None = None,
	full_dev_path: bool = True,
) -> LsblkOutput:
	cmd = ['lsblk', '--json', '--bytes', '--output', ','.join(LsblkInfo.fields())]

	if full_dev_path:
		cmd.append('--paths')

	if dev_path:
		cmd.append(str(dev_path))

	try:
		worker = SysCommand(cmd)
	except SysCallError as err:
		# Get the output minus the message/info from lsblk if it returns a non-zero exit code.
		if err.worker_log:
			debug(f'Error calling lsblk: {err.worker_log.decode()}')

		if dev_path:
			raise DiskError(f'Failed to read disk "{dev_path}" with lsblk', command=cmd)

		raise err

	output = worker.output(remove_cr=False)
	return LsblkOutput.model_validate_json(output)


def get_lsblk_info(dev_path: Path | str) -> LsblkInfo:
	infos = _fetch_lsblk_info(dev_path)

	if infos.blockdevices:
		return infos.blockdevices[0]

	raise DiskError(f'lsblk failed to retrieve information for "{dev_path}"')


def get_all_lsblk_info() -> list[LsblkInfo]:
	return _fetch_lsblk_info().blockdevices


def disk_layouts() -> str:
	try:
		lsblk_output = _fetch_lsblk_info()
	except SysCallError as err:
		warn(f'Could not return disk layouts: {err}')
		return ''

	return lsblk_output.model_dump_json(indent=4)


def get_mounts() -> list[MountInfo]:
	cmd = ['findmnt', '--json', '--list', '--output', 'SOURCE,TARGET,FSTYPE,OPTIONS,FSROOT']

	try:
		worker = SysCommand(cmd)
	except SysCallError as err:
		# findmnt exits with 1 when nothing matched
		if err.exit_code == 1 and not err.worker_log.strip():
			return []
		raise err

	return FindmntOutput.model_validate_json(worker.output(remove_cr=False)).filesystems


def partition_path(device: Path, number: int) -> Path:
	"""
	Kernel naming of partition nodes, /dev/sda -> /dev/sda1 and
	/dev/nvme0n1 -> /dev/nvme0n1p1.
	"""
	name = device.name

	if name[-1:].isdigit():
		return device.with_name(f'{name}p{number}')

	return device.with_name(f'{name}{number}')


def relative_to_root(root: Path, mountpoint: Path) -> Path:
	return root / mountpoint.relative_to(mountpoint.anchor)
