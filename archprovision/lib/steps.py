from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from graphlib import CycleError, TopologicalSorter
from typing import Any

from .exceptions import ExecutionError


@dataclass
class Step:
	key: str
	phase: str
	description: str
	action: Callable[[], None]
	depends_on: list[str] = field(default_factory=list)
	destructive: bool = False
	retries: int = 0

	def table_data(self) -> dict[str, Any]:
		return {
			'step': self.key,
			'phase': self.phase,
			'destructive': 'yes' if self.destructive else '',
			'description': self.description,
		}


class StepGraph:
	"""
	Steps with explicit dependencies. The order handed out keeps the
	declaration order wherever the dependencies allow it.
	"""

	def __init__(self) -> None:
		self._steps: dict[str, Step] = {}

	def add(self, step: Step) -> Step:
		if step.key in self._steps:
			raise ValueError(f'Duplicate step: {step.key}')

		self._steps[step.key] = step
		return step

	def __contains__(self, key: str) -> bool:
		return key in self._steps

	def __len__(self) -> int:
		return len(self._steps)

	def keys(self, phase: str | None = None) -> list[str]:
		return [k for k, s in self._steps.items() if phase is None or s.phase == phase]

	def validate(self) -> None:
		for step in self._steps.values():
			unknown = [d for d in step.depends_on if d not in self._steps]
			if unknown:
				raise ExecutionError(
					f'Step {step.key} depends on unknown step(s): {", ".join(unknown)}',
					step=step.key,
				)

		sorter = TopologicalSorter({k: s.depends_on for k, s in self._steps.items()})

		try:
			sorter.prepare()
		except CycleError as err:
			cycle = ' -> '.join(err.args[1])
			raise ExecutionError(f'Step dependencies contain a cycle: {cycle}')

	def ordered(self) -> list[Step]:
		self.validate()

		done: set[str] = set()
		pending = list(self._steps.values())
		order: list[Step] = []

		while pending:
			step = next(s for s in pending if all(d in done for d in s.depends_on))
			pending.remove(step)
			done.add(step.key)
			order.append(step)

		return order
