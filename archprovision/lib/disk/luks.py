from __future__ import annotations

import shlex
from dataclasses import dataclass
from pathlib import Path
from subprocess import CalledProcessError

from ..exceptions import DiskError, SysCallError
from ..general import SysCommand, run
from ..models.plan import EncryptionSpec
from ..output import debug, info


@dataclass
class Luks2:
	luks_dev_path: Path
	mapper_name: str | None = None
	passphrase: str | None = None

	@property
	def mapper_dev(self) -> Path | None:
		if self.mapper_name:
			return Path(f'/dev/mapper/{self.mapper_name}')
		return None

	def isLuks(self) -> bool:
		try:
			SysCommand(['cryptsetup', 'isLuks', str(self.luks_dev_path)])
			return True
		except SysCallError:
			return False

	def _password_bytes(self) -> bytes:
		if not self.passphrase:
			raise ValueError('Passphrase for luks2 device was not specified')

		return bytes(self.passphrase, 'UTF-8')

	def encrypt(self, spec: EncryptionSpec) -> None:
		debug(f'Luks2 encrypting: {self.luks_dev_path}')

		cmd = [
			'cryptsetup',
			'--batch-mode',
			'--verbose',
			'luksFormat',
			'--type',
			'luks2',
			'--cipher',
			spec.cipher,
			'--key-size',
			str(spec.key_size),
			'--hash',
			spec.hash,
			'--pbkdf',
			spec.pbkdf,
			'--use-random',
			str(self.luks_dev_path),
		]

		debug(f'cryptsetup format: {shlex.join(cmd)}')

		try:
			result = run(cmd, input_data=self._password_bytes())
		except CalledProcessError as err:
			output = err.stdout.decode().rstrip()
			raise DiskError(f'Could not encrypt volume "{self.luks_dev_path}": {output}', command=cmd)

		debug(f'cryptsetup luksFormat output: {result.stdout.decode().rstrip()}')

	def get_luks_uuid(self) -> str:
		try:
			return SysCommand(['cryptsetup', 'luksUUID', str(self.luks_dev_path)]).decode()
		except SysCallError as err:
			info(f'Unable to get UUID for Luks device: {self.luks_dev_path}')
			raise err

	def is_unlocked(self) -> bool:
		return (mapper_dev := self.mapper_dev) is not None and mapper_dev.exists()

	def backing_device(self) -> Path | None:
		if not self.mapper_name:
			raise ValueError('mapper name missing')

		try:
			output = SysCommand(['cryptsetup', 'status', self.mapper_name]).decode()
		except SysCallError as err:
			# cryptsetup exits with 4 when the mapping is not active
			if err.exit_code == 4:
				return None
			raise err

		for line in output.splitlines():
			key, _, value = line.strip().partition(':')
			if key == 'device':
				return Path(value.strip())

		return None

	def unlock(self) -> Path:
		debug(f'Unlocking luks2 device: {self.luks_dev_path}')

		if not self.mapper_name:
			raise ValueError('mapper name missing')

		cmd = [
			'cryptsetup',
			'open',
			str(self.luks_dev_path),
			str(self.mapper_name),
			'--type',
			'luks2',
		]

		try:
			result = run(cmd, input_data=self._password_bytes())
		except CalledProcessError as err:
			output = err.stdout.decode().rstrip()
			raise DiskError(f'Failed to open luks2 device "{self.luks_dev_path}": {output}', command=cmd)

		debug(f'cryptsetup open output: {result.stdout.decode().rstrip()}')

		if not self.is_unlocked():
			raise DiskError(f'Failed to open luks2 device: {self.luks_dev_path}', command=cmd)

		return Path(f'/dev/mapper/{self.mapper_name}')

	def lock(self) -> None:
		if not self.mapper_name:
			raise ValueError('mapper name missing')

		debug(f'Closing crypt device {self.mapper_name}')
		SysCommand(['cryptsetup', 'close', self.mapper_name])
