import pytest

from archprovision.lib.exceptions import ExecutionError
from archprovision.lib.steps import Step, StepGraph


def _noop() -> None:
	pass


def test_declaration_order_is_kept() -> None:
	graph = StepGraph()
	graph.add(Step('b', 'format', 'second', _noop, depends_on=['a']))
	graph.add(Step('c', 'format', 'independent', _noop))
	graph.add(Step('a', 'wipe', 'first', _noop))

	assert [s.key for s in graph.ordered()] == ['c', 'a', 'b']
	assert graph.keys('format') == ['b', 'c']
	assert 'a' in graph
	assert len(graph) == 3


def test_cycle_is_rejected() -> None:
	graph = StepGraph()
	graph.add(Step('a', 'mount', 'a', _noop, depends_on=['b']))
	graph.add(Step('b', 'mount', 'b', _noop, depends_on=['a']))

	with pytest.raises(ExecutionError, match='cycle'):
		graph.ordered()


def test_unknown_dependency_is_rejected() -> None:
	graph = StepGraph()
	graph.add(Step('mount:/home', 'mount', 'mount /home', _noop, depends_on=['mount:/']))

	with pytest.raises(ExecutionError) as err:
		graph.validate()

	assert err.value.step == 'mount:/home'
	assert 'mount:/' in err.value.message


def test_duplicate_step() -> None:
	graph = StepGraph()
	graph.add(Step('a', 'wipe', 'a', _noop))

	with pytest.raises(ValueError):
		graph.add(Step('a', 'wipe', 'again', _noop))
