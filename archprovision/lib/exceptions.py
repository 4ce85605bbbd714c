from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
	from .models.report import VerificationReport


class RequirementError(Exception):
	pass


class SysCallError(Exception):
	def __init__(self, message: str, exit_code: int | None = None, worker_log: bytes = b'', cmd: list[str] | None = None) -> None:
		super().__init__(message)
		self.message = message
		self.exit_code = exit_code
		self.worker_log = worker_log
		self.cmd = cmd or []


class ProvisionError(Exception):
	"""
	Base class for every failure the workflow reports to the user.
	Carries the failing step, the exact command that was attempted
	and a hint on how to recover.
	"""

	def __init__(
		self,
		message: str,
		step: str | None = None,
		command: list[str] | None = None,
		remediation: str | None = None,
	) -> None:
		super().__init__(message)
		self.message = message
		self.step = step
		self.command = command or []
		self.remediation = remediation


class InvalidPlanError(ProvisionError):
	def __init__(self, problems: list[str] | str) -> None:
		if isinstance(problems, str):
			problems = [problems]

		self.problems = problems
		text = 'Invalid plan:\n' + '\n'.join(f'  - {p}' for p in problems)

		super().__init__(
			text,
			step='validate',
			remediation='Fix the listed problems in the plan file and run "plan validate" again',
		)


class DiskError(ProvisionError):
	pass


class DeviceNotFoundError(DiskError):
	pass


class DeviceBusyError(DiskError):
	pass


class PartitionNotReadyError(DiskError):
	pass


class DestructiveOperationRefused(ProvisionError):
	pass


class ExecutionError(ProvisionError):
	pass


class MountFailure(ProvisionError):
	def __init__(
		self,
		failed: list[str],
		pending: list[str],
		command: list[str] | None = None,
		reason: str = '',
	) -> None:
		self.failed = failed
		self.pending = pending

		text = f'Mount phase aborted, failed entries: {", ".join(failed)}'
		if pending:
			text += f'; not mounted: {", ".join(pending)}'
		if reason:
			text += f'\n{reason}'

		super().__init__(
			text,
			step='mount',
			command=command,
			remediation='Partially mounted state is left in place, inspect with "findmnt" and unmount manually before re-running',
		)


class VerificationFailed(ProvisionError):
	def __init__(self, report: VerificationReport) -> None:
		self.report = report
		counts = report.summary()

		super().__init__(
			f'Verification found {counts["Fail"]} failing check(s)',
			step='verify',
			remediation='Review the failing checks above, each lists a suggested fix',
		)
