from pathlib import Path

import pytest
from pytest import MonkeyPatch

import archprovision
from archprovision.lib.disk.memory import InMemoryDeviceOperations
from archprovision.lib.exceptions import RequirementError
from archprovision.lib.fstab import read_fstab
from archprovision.lib.models.device import Size, Unit


@pytest.fixture
def cli_ops(monkeypatch: MonkeyPatch, device_ops: InMemoryDeviceOperations) -> InMemoryDeviceOperations:
	monkeypatch.setattr(archprovision, 'SystemDeviceOperations', lambda: device_ops)
	monkeypatch.setattr(archprovision, 'check_requirements', lambda **kwargs: None)
	monkeypatch.setattr(archprovision, 'disk_layouts', lambda: '')
	return device_ops


@pytest.fixture
def passphrase_file(tmp_path: Path, passphrase: str) -> Path:
	path = tmp_path / 'luks.key'
	path.write_text(passphrase + '\n')
	return path


def test_no_command() -> None:
	assert archprovision.main([]) == archprovision.EXIT_INVALID


def test_show(three_disk_plan_fixture: Path) -> None:
	assert archprovision.main(['plan', 'show', str(three_disk_plan_fixture)]) == archprovision.EXIT_OK


def test_validate(cli_ops: InMemoryDeviceOperations, three_disk_plan_fixture: Path, overlapping_plan_fixture: Path) -> None:
	assert archprovision.main(['plan', 'validate', str(three_disk_plan_fixture)]) == archprovision.EXIT_OK
	assert archprovision.main(['plan', 'validate', str(overlapping_plan_fixture)]) == archprovision.EXIT_INVALID


def test_validate_missing_devices(monkeypatch: MonkeyPatch, three_disk_plan_fixture: Path) -> None:
	ops = InMemoryDeviceOperations({Path('/dev/sda'): Size(256, Unit.GiB)})
	monkeypatch.setattr(archprovision, 'SystemDeviceOperations', lambda: ops)

	assert archprovision.main(['plan', 'validate', str(three_disk_plan_fixture)]) == archprovision.EXIT_INVALID


def test_malformed_plan(malformed_plan_fixture: Path) -> None:
	assert archprovision.main(['plan', 'show', str(malformed_plan_fixture)]) == archprovision.EXIT_INVALID


def test_apply_requires_confirmation(
	cli_ops: InMemoryDeviceOperations,
	three_disk_plan_fixture: Path,
	passphrase_file: Path,
	target: Path,
) -> None:
	rc = archprovision.main(
		['plan', 'apply', str(three_disk_plan_fixture), '--target', str(target), '--passphrase-file', str(passphrase_file)]
	)

	assert rc == archprovision.EXIT_EXECUTION
	assert cli_ops.mutations() == []


def test_dry_run(cli_ops: InMemoryDeviceOperations, three_disk_plan_fixture: Path, target: Path) -> None:
	rc = archprovision.main(['plan', 'apply', str(three_disk_plan_fixture), '--dry-run', '--target', str(target)])

	assert rc == archprovision.EXIT_OK
	assert cli_ops.mutations() == []


def test_apply_then_verify(
	cli_ops: InMemoryDeviceOperations,
	three_disk_plan_fixture: Path,
	passphrase_file: Path,
	target: Path,
) -> None:
	rc = archprovision.main(
		[
			'plan',
			'apply',
			str(three_disk_plan_fixture),
			'--confirm',
			'--target',
			str(target),
			'--passphrase-file',
			str(passphrase_file),
		]
	)

	assert rc == archprovision.EXIT_OK
	assert len(read_fstab(target / 'etc/fstab')) == 10

	rc = archprovision.main(['verify', '--plan', str(three_disk_plan_fixture), '--root', str(target)])
	assert rc == archprovision.EXIT_OK


def test_verify_fails_before_apply(cli_ops: InMemoryDeviceOperations, three_disk_plan_fixture: Path, tmp_path: Path) -> None:
	rc = archprovision.main(['verify', '--plan', str(three_disk_plan_fixture), '--root', str(tmp_path)])

	assert rc == archprovision.EXIT_VERIFY_FAILED


def test_missing_requirements(monkeypatch: MonkeyPatch, target: Path) -> None:
	def _missing(**kwargs: object) -> None:
		raise RequirementError('Missing binaries: cryptsetup')

	monkeypatch.setattr(archprovision, 'check_requirements', _missing)
	monkeypatch.setattr(archprovision, 'SystemDeviceOperations', lambda: InMemoryDeviceOperations())

	rc = archprovision.main(['recover-home', '--root', str(target)])

	assert rc == archprovision.EXIT_INVALID


def test_recover_home_fallback(cli_ops: InMemoryDeviceOperations, tmp_path: Path) -> None:
	rc = archprovision.main(['recover-home', '--root', str(tmp_path), '--user', 'alice'])

	assert rc == archprovision.EXIT_OK
	assert cli_ops.owners[tmp_path / 'home/alice'] == 'alice'


def test_missing_confirmation_is_reported_before_requirements(
	cli_ops: InMemoryDeviceOperations,
	monkeypatch: MonkeyPatch,
	three_disk_plan_fixture: Path,
	passphrase_file: Path,
	target: Path,
) -> None:
	checked: list[dict[str, object]] = []

	def _not_root(**kwargs: object) -> None:
		checked.append(kwargs)
		raise RequirementError('archprovision requires root privileges to run')

	monkeypatch.setattr(archprovision, 'check_requirements', _not_root)
	args = ['plan', 'apply', str(three_disk_plan_fixture), '--target', str(target), '--passphrase-file', str(passphrase_file)]

	assert archprovision.main(args) == archprovision.EXIT_EXECUTION
	assert checked == []
	assert cli_ops.mutations() == []

	# with --confirm the environment is checked next
	assert archprovision.main([*args, '--confirm']) == archprovision.EXIT_INVALID
	assert checked == [{'require_uefi': True}]
	assert cli_ops.mutations() == []
