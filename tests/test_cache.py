from pathlib import Path

from archprovision.lib.cache import (
	exported_variables,
	render_profile,
	render_tmpfiles,
	write_cache_configuration,
)
from archprovision.lib.disk.memory import InMemoryDeviceOperations
from archprovision.lib.models.plan import CacheDirectory, ProvisionPlan


def test_profile_exports_every_variable(three_disk_plan: ProvisionPlan) -> None:
	text = render_profile(three_disk_plan.caches)

	assert text.startswith('#!/bin/sh\n')
	assert exported_variables(text) == {
		'npm_config_cache': '/var/cache/dev/npm',
		'CARGO_HOME': '/var/cache/dev/cargo',
		'PIP_CACHE_DIR': '/var/cache/dev/pip',
	}


def test_values_are_quoted() -> None:
	cache = CacheDirectory(name='odd', path=Path('/var/cache/dev/odd dir'), environment={'ODD_CACHE': '/var/cache/dev/odd dir'})
	text = render_profile([cache])

	assert "export ODD_CACHE='/var/cache/dev/odd dir'" in text
	assert exported_variables(text) == {'ODD_CACHE': '/var/cache/dev/odd dir'}


def test_tmpfiles_lines(three_disk_plan: ProvisionPlan) -> None:
	lines = render_tmpfiles(three_disk_plan.caches).splitlines()

	assert lines[1:] == [
		'd /var/cache/dev/npm 0755 root root -',
		'd /var/cache/dev/cargo 0755 root root -',
		'd /var/cache/dev/pip 0755 root root -',
	]


def test_write_cache_configuration(three_disk_plan: ProvisionPlan, tmp_path: Path) -> None:
	ops = InMemoryDeviceOperations()
	files = write_cache_configuration(tmp_path, three_disk_plan.caches, ops)

	assert files == [tmp_path / 'etc/profile.d/dev-paths.sh', tmp_path / 'etc/tmpfiles.d/dev-caches.conf']
	assert [call[1] for call in ops.calls_of('make_directory')] == [
		str(tmp_path / 'var/cache/dev/npm'),
		str(tmp_path / 'var/cache/dev/cargo'),
		str(tmp_path / 'var/cache/dev/pip'),
	]
	assert 'CARGO_HOME' in exported_variables(files[0].read_text())


def test_nothing_to_write(tmp_path: Path) -> None:
	ops = InMemoryDeviceOperations()

	assert write_cache_configuration(tmp_path, [], ops) == []
	assert ops.calls == []
	assert not (tmp_path / 'etc').exists()
