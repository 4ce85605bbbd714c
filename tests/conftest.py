from collections.abc import Callable, Iterator
from pathlib import Path

import pytest

from archprovision.lib.disk.memory import InMemoryDeviceOperations
from archprovision.lib.executor import ConfirmationToken, Executor
from archprovision.lib.models.device import Size, Unit
from archprovision.lib.models.plan import EncryptionSpec, ProvisionPlan
from archprovision.lib.output import logger
from archprovision.lib.validation import load_plan

PASSPHRASE = 'correct horse battery staple'


@pytest.fixture(autouse=True)
def log_directory(tmp_path: Path) -> Iterator[Path]:
	directory = tmp_path / 'log'
	previous = logger.directory

	logger.set_directory(directory)
	logger.verbose = False
	yield directory

	logger.set_directory(previous)
	logger.verbose = False


@pytest.fixture(scope='session')
def three_disk_plan_fixture() -> Path:
	return Path(__file__).parent / 'data' / 'three_disk_plan.json'


@pytest.fixture(scope='session')
def overlapping_plan_fixture() -> Path:
	return Path(__file__).parent / 'data' / 'overlapping_plan.json'


@pytest.fixture(scope='session')
def subvolume_on_vfat_plan_fixture() -> Path:
	return Path(__file__).parent / 'data' / 'subvolume_on_vfat_plan.json'


@pytest.fixture(scope='session')
def malformed_plan_fixture() -> Path:
	return Path(__file__).parent / 'data' / 'malformed_plan.json'


@pytest.fixture
def three_disk_plan(three_disk_plan_fixture: Path) -> ProvisionPlan:
	return load_plan(three_disk_plan_fixture)


@pytest.fixture
def device_ops() -> InMemoryDeviceOperations:
	return InMemoryDeviceOperations(
		{
			Path('/dev/nvme0n1'): Size(512, Unit.GiB),
			Path('/dev/nvme1n1'): Size(2, Unit.TiB),
			Path('/dev/sda'): Size(256, Unit.GiB),
		}
	)


@pytest.fixture
def target(tmp_path: Path) -> Path:
	return tmp_path / 'mnt'


@pytest.fixture
def passphrase() -> str:
	return PASSPHRASE


@pytest.fixture
def passphrase_provider(passphrase: str) -> Callable[[EncryptionSpec], str]:
	def _provider(spec: EncryptionSpec) -> str:
		return passphrase

	return _provider


@pytest.fixture
def applied_ops(
	device_ops: InMemoryDeviceOperations,
	three_disk_plan: ProvisionPlan,
	target: Path,
	passphrase_provider: Callable[[EncryptionSpec], str],
) -> InMemoryDeviceOperations:
	executor = Executor(device_ops, target=target, sleep=lambda _: None)
	executor.apply(three_disk_plan, ConfirmationToken.for_plan(three_disk_plan), passphrase_provider=passphrase_provider)
	return device_ops
