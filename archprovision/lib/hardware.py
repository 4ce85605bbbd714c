import os

from .exceptions import RequirementError
from .general import locate_binary
from .output import debug

# binaries that SystemDeviceOperations shells out to
REQUIRED_BINARIES = [
	'wipefs',
	'parted',
	'partprobe',
	'udevadm',
	'mkfs.fat',
	'mkfs.btrfs',
	'mkswap',
	'cryptsetup',
	'btrfs',
	'chattr',
	'mount',
	'umount',
	'swapon',
	'blkid',
	'lsblk',
	'findmnt',
]


class SysInfo:
	@staticmethod
	def has_uefi() -> bool:
		return os.path.isdir('/sys/firmware/efi/efivars')

	@staticmethod
	def is_root() -> bool:
		return os.geteuid() == 0

	@staticmethod
	def missing_binaries(names: list[str] | None = None) -> list[str]:
		missing = []

		for name in names or REQUIRED_BINARIES:
			try:
				locate_binary(name)
			except RequirementError:
				missing.append(name)

		return missing


def check_requirements(require_uefi: bool = False, binaries: list[str] | None = None) -> None:
	if not SysInfo.is_root():
		raise RequirementError('archprovision must be run as root when touching block devices')

	if require_uefi and not SysInfo.has_uefi():
		raise RequirementError('System must be booted in UEFI mode to create an EFI system partition')

	if missing := SysInfo.missing_binaries(binaries):
		raise RequirementError(f'Required binaries not found: {", ".join(missing)}')

	debug(f'Requirements satisfied; UEFI mode: {SysInfo.has_uefi()}')
