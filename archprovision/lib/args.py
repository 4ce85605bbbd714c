import argparse
import os
from argparse import ArgumentParser
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path

from pydantic.dataclasses import dataclass as p_dataclass

from .interactions import PASSPHRASE_FILE_ENV
from .output import logger, warn


@p_dataclass
class Arguments:
	command: str | None = None
	action: str | None = None
	plan: Path | None = None
	confirm: bool = False
	force: bool = False
	dry_run: bool = False
	target: Path = Path('/mnt')
	root: Path = Path('/')
	device: Path | None = None
	user: str | None = None
	passphrase_file: Path | None = None
	debug: bool = False
	verbose: bool = False


class ProvisionConfigHandler:
	def __init__(self, argv: list[str] | None = None) -> None:
		self._parser: ArgumentParser = self._define_arguments()
		self._args: Arguments = self._parse_args(argv)

	@property
	def args(self) -> Arguments:
		return self._args

	def print_help(self) -> None:
		self._parser.print_help()

	@staticmethod
	def _get_version() -> str:
		try:
			return version('archprovision')
		except PackageNotFoundError:
			return 'archprovision version not found'

	def _define_arguments(self) -> ArgumentParser:
		parser = ArgumentParser(prog='archprovision', formatter_class=argparse.ArgumentDefaultsHelpFormatter)
		parser.add_argument(
			'-v',
			'--version',
			action='version',
			default=False,
			version='%(prog)s ' + self._get_version(),
		)
		parser.add_argument(
			'--debug',
			action='store_true',
			default=False,
			help='Adds debug info into the log and echoes it to the terminal',
		)
		parser.add_argument(
			'--verbose',
			action='store_true',
			default=False,
			help='Print the external commands that are run',
		)

		commands = parser.add_subparsers(dest='command', metavar='command')

		plan = commands.add_parser('plan', help='Validate, show or apply a provisioning plan')
		actions = plan.add_subparsers(dest='action', metavar='action', required=True)

		validate = actions.add_parser('validate', help='Check a plan against the devices present')
		validate.add_argument('plan', type=Path, help='JSON plan file')

		show = actions.add_parser('show', help='Print the partition layout and mounts of a plan')
		show.add_argument('plan', type=Path, help='JSON plan file')

		apply = actions.add_parser('apply', help='Wipe, partition, format and mount the devices of a plan')
		apply.add_argument('plan', type=Path, help='JSON plan file')
		apply.add_argument(
			'--confirm',
			action='store_true',
			default=False,
			help='Confirm that all data on the devices in the plan may be destroyed',
		)
		apply.add_argument(
			'--force',
			action='store_true',
			default=False,
			help='Overwrite partitions that already contain a LUKS container',
		)
		apply.add_argument(
			'--dry-run',
			action='store_true',
			default=False,
			help='Validate and print the ordered steps without touching any device',
		)
		apply.add_argument(
			'--target',
			type=Path,
			default=Path('/mnt'),
			help='Directory the new root filesystem is mounted at',
		)
		apply.add_argument(
			'--passphrase-file',
			type=Path,
			default=None,
			help=f'File holding the LUKS passphrase, defaults to ${PASSPHRASE_FILE_ENV}',
		)

		verify = commands.add_parser('verify', help='Audit the live system, against a plan if one is given')
		verify.add_argument('--plan', type=Path, default=None, help='JSON plan file')
		verify.add_argument('--root', type=Path, default=Path('/'), help='Root of the system to audit')

		recover = commands.add_parser('recover-home', help='Repair a missing /home mount')
		recover.add_argument('--plan', type=Path, default=None, help='JSON plan file describing /home')
		recover.add_argument('--device', type=Path, default=None, help='Device to use for /home')
		recover.add_argument('--user', type=str, default=None, help='Create a home directory owned by this user')
		recover.add_argument(
			'--confirm',
			action='store_true',
			default=False,
			help='Allow creating a filesystem on a device that has none',
		)
		recover.add_argument('--root', type=Path, default=Path('/'), help='Root of the system to repair')

		return parser

	def _parse_args(self, argv: list[str] | None) -> Arguments:
		argparse_args = vars(self._parser.parse_args(argv))
		args: Arguments = Arguments(**argparse_args)

		if args.command == 'plan' and args.action == 'apply' and args.passphrase_file is None:
			if env := os.environ.get(PASSPHRASE_FILE_ENV):
				args.passphrase_file = Path(env)

		if args.debug:
			warn(f'Warning: --debug mode will write device details to {logger.path}')

		return args
