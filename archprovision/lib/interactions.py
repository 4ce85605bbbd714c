import getpass
import os
from pathlib import Path

from .exceptions import ExecutionError
from .general import read_secret_file
from .models.plan import EncryptionSpec
from .output import log

PASSPHRASE_FILE_ENV = 'ARCHPROVISION_PASSPHRASE_FILE'


def get_passphrase(prompt: str) -> str | None:
	while passphrase := getpass.getpass(prompt):
		if len(passphrase.strip()) <= 0:
			break

		verification = getpass.getpass(prompt='And one more time for verification: ')
		if passphrase != verification:
			log(' * Passphrases did not match * ', fg='red')
			continue

		return passphrase

	return None


class PassphraseSource:
	"""
	Hands out the passphrase of a LUKS container, read from a file or
	asked for interactively. Nothing is written anywhere.
	"""

	def __init__(self, passphrase_file: Path | None = None) -> None:
		if passphrase_file is None and (env := os.environ.get(PASSPHRASE_FILE_ENV)):
			passphrase_file = Path(env)

		self._passphrase_file = passphrase_file

	def __call__(self, spec: EncryptionSpec) -> str:
		if self._passphrase_file is not None:
			return read_secret_file(self._passphrase_file)

		passphrase = get_passphrase(f'Passphrase for {spec.mapper_name}: ')

		if passphrase is None:
			raise ExecutionError(f'No passphrase given for {spec.mapper_name}', step='preflight')

		return passphrase
