from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ..output import FormattedOutput


class Status(Enum):
	Pass = 'Pass'
	Warn = 'Warn'
	Fail = 'Fail'


@dataclass(frozen=True)
class Finding:
	check: str
	target: str
	status: Status
	message: str
	remediation: str = ''

	def table_data(self) -> dict[str, Any]:
		return {
			'status': self.status.value,
			'check': self.check,
			'target': self.target,
			'message': self.message,
			'remediation': self.remediation,
		}


@dataclass
class VerificationReport:
	findings: list[Finding] = field(default_factory=list)

	def add(
		self,
		check: str,
		target: str,
		status: Status,
		message: str,
		remediation: str = '',
	) -> Finding:
		finding = Finding(check, target, status, message, remediation)
		self.findings.append(finding)
		return finding

	def summary(self) -> dict[str, int]:
		counts = {s.value: 0 for s in Status}

		for finding in self.findings:
			counts[finding.status.value] += 1

		return counts

	@property
	def status(self) -> Status:
		statuses = {f.status for f in self.findings}

		if Status.Fail in statuses:
			return Status.Fail
		if Status.Warn in statuses:
			return Status.Warn
		return Status.Pass

	def failures(self) -> list[Finding]:
		return [f for f in self.findings if f.status == Status.Fail]

	def as_text(self) -> str:
		counts = self.summary()
		table = FormattedOutput.as_table(self.findings, columns=['status', 'check', 'target', 'message'])
		totals = ', '.join(f'{k}: {v}' for k, v in counts.items())
		return f'{table}\nOverall: {self.status.value} ({totals})'
