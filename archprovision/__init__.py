"""Declarative disk provisioning for Arch Linux installations"""

import shlex
import sys
import traceback
from pathlib import Path

from .lib.args import Arguments, ProvisionConfigHandler
from .lib.disk.system import SystemDeviceOperations
from .lib.disk.utils import disk_layouts, partition_path
from .lib.exceptions import (
	InvalidPlanError,
	ProvisionError,
	RequirementError,
	SysCallError,
	VerificationFailed,
)
from .lib.executor import ConfirmationToken, Executor, require_confirmation
from .lib.fstab import FstabEntry
from .lib.hardware import SysInfo, check_requirements
from .lib.interactions import PassphraseSource
from .lib.models.plan import ProvisionPlan
from .lib.models.report import Status
from .lib.output import FormattedOutput, debug, error, info, logger, warn
from .lib.recovery import HomeRecovery
from .lib.validation import load_plan, validate_plan
from .lib.verifier import Verifier

EXIT_OK = 0
EXIT_INVALID = 1
EXIT_EXECUTION = 2
EXIT_VERIFY_FAILED = 3
EXIT_INTERRUPTED = 130


def _report(err: ProvisionError) -> None:
	error(err.message)

	if err.step:
		error(f'Failed step: {err.step}')
	if err.command:
		error(f'Command: {shlex.join(err.command)}')
	if err.remediation:
		warn(f'Suggested remediation: {err.remediation}')


def _mount_preview(plan: ProvisionPlan) -> list[FstabEntry]:
	rows = []

	for entry in plan.resolved_mounts():
		part = plan.partition(entry.partition)
		source = f'{entry.partition}:{entry.subvolume}' if entry.subvolume else entry.partition
		fstype = part.fs_type.fs_type_mount if part else '?'

		rows.append(
			FstabEntry(
				source,
				str(entry.mountpoint) if entry.mountpoint else 'none',
				fstype,
				tuple(plan.mount_options(entry)),
				entry.dump,
				plan.passno(entry),
			)
		)

	return rows


def _show(plan: ProvisionPlan) -> None:
	for disk in plan.disks:
		info(f'{disk.device} ({disk.role.value}, {disk.table})')
		info(FormattedOutput.as_table(disk.partitions))

	info('Mounts:')
	info(FormattedOutput.as_table(_mount_preview(plan)))

	for cache in plan.caches:
		info(f'Cache {cache.name}: {cache.path} ({", ".join(cache.environment)})')


def _plan_command(args: Arguments) -> int:
	assert args.plan is not None
	plan = load_plan(args.plan)

	if args.action == 'show':
		_show(plan)
		return EXIT_OK

	ops = SystemDeviceOperations()

	if args.action == 'validate':
		layout = validate_plan(plan, ops)
		for extents in layout.values():
			info(FormattedOutput.as_table(extents))
		info(f'{args.plan} is valid')
		return EXIT_OK

	executor = Executor(ops, target=args.target)

	if args.dry_run:
		steps = executor.dry_run(plan)
		info(FormattedOutput.as_table(steps))
		info(f'{len(steps)} steps, nothing was changed')
		return EXIT_OK

	confirmation = ConfirmationToken.for_plan(plan) if args.confirm else None

	# plan problems and a missing --confirm are reported before the environment checks
	validate_plan(plan, ops)
	require_confirmation(plan, confirmation)

	check_requirements(require_uefi=any(p.is_esp for _, _, p in plan.partitions()))
	debug(f'Disk states before provisioning:\n{disk_layouts()}')

	result = executor.apply(plan, confirmation, force=args.force, passphrase_provider=PassphraseSource(args.passphrase_file))

	info(FormattedOutput.as_table(result.fstab))
	for path in result.files:
		info(f'Wrote {path}')

	return EXIT_OK


def _verify_command(args: Arguments) -> int:
	plan = load_plan(args.plan) if args.plan else None
	report = Verifier(SystemDeviceOperations(), root=args.root).verify(plan)

	info(report.as_text())

	if report.status == Status.Fail:
		raise VerificationFailed(report)

	return EXIT_OK


def _recover_command(args: Arguments) -> int:
	check_requirements()
	plan = load_plan(args.plan) if args.plan else None

	confirmation = None
	if args.confirm:
		if args.device:
			confirmation = ConfirmationToken.for_devices(args.device)
		elif plan is not None:
			devices: list[Path] = []
			for disk, number, part in plan.partitions():
				devices.append(partition_path(disk.device, number))
				if part.encryption:
					devices.append(part.encryption.mapper_path)
			confirmation = ConfirmationToken.for_devices(*devices)

	HomeRecovery(SystemDeviceOperations(), root=args.root).recover(plan, args.device, args.user, confirmation)
	return EXIT_OK


def main(argv: list[str] | None = None) -> int:
	"""
	This can either be run as the installed application: archprovision
	OR straight as a module: python -m archprovision
	"""
	handler = ProvisionConfigHandler(argv)
	args = handler.args

	logger.verbose = args.debug or args.verbose

	if args.command is None:
		handler.print_help()
		return EXIT_INVALID

	debug(f'Running {args.command} {args.action or ""}; UEFI mode: {SysInfo.has_uefi()}')

	try:
		match args.command:
			case 'plan':
				return _plan_command(args)
			case 'verify':
				return _verify_command(args)
			case 'recover-home':
				return _recover_command(args)
			case _:
				handler.print_help()
				return EXIT_INVALID
	except KeyboardInterrupt:
		error('Interrupted, devices may be left in a partial state')
		return EXIT_INTERRUPTED
	except (InvalidPlanError, RequirementError) as err:
		if isinstance(err, InvalidPlanError):
			_report(err)
		else:
			error(str(err))
		return EXIT_INVALID
	except VerificationFailed as err:
		_report(err)
		return EXIT_VERIFY_FAILED
	except ProvisionError as err:
		_report(err)
		return EXIT_EXECUTION
	except SysCallError as err:
		error(err.message)
		if err.cmd:
			error(f'Command: {shlex.join(err.cmd)}')
		return EXIT_EXECUTION


def run_as_a_module() -> None:
	rc = 0
	exc = None

	try:
		rc = main()
	except Exception as e:
		exc = e
	finally:
		if exc:
			err = ''.join(traceback.format_exception(exc))
			error(err)

			text = (
				'archprovision experienced the above error. If you think this is a bug, please include\n'
				f'the log file "{logger.path}" and "{logger.directory / "cmd_history.txt"}" in the report.\n'
			)

			warn(text)
			rc = EXIT_EXECUTION

		sys.exit(rc)


__all__ = [
	'FormattedOutput',
	'SysInfo',
	'debug',
	'error',
	'info',
	'main',
	'run_as_a_module',
	'warn',
]
