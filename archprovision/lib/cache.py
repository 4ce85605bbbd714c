import re
import shlex
from pathlib import Path

from .disk.operations import DeviceOperations
from .disk.utils import relative_to_root
from .fstab import write_atomic
from .models.plan import CacheDirectory
from .output import info

PROFILE_PATH = Path('/etc/profile.d/dev-paths.sh')
TMPFILES_PATH = Path('/etc/tmpfiles.d/dev-caches.conf')

_EXPORT = re.compile(r'^\s*export\s+([A-Za-z_][A-Za-z0-9_]*)=(.*)$')


def render_profile(caches: list[CacheDirectory]) -> str:
	lines = [
		'#!/bin/sh',
		'# Development tool cache locations, generated by archprovision',
	]

	for cache in caches:
		lines.append(f'# {cache.name}')
		for variable, value in cache.environment.items():
			lines.append(f'export {variable}={shlex.quote(value)}')

	return '\n'.join(lines) + '\n'


def render_tmpfiles(caches: list[CacheDirectory]) -> str:
	lines = ['# Development tool cache directories, generated by archprovision']

	for cache in caches:
		lines.append(f'd {cache.path} {cache.mode} {cache.user} {cache.group} -')

	return '\n'.join(lines) + '\n'


def exported_variables(text: str) -> dict[str, str]:
	variables = {}

	for line in text.splitlines():
		if match := _EXPORT.match(line):
			name, value = match.groups()
			parsed = shlex.split(value)
			variables[name] = parsed[0] if parsed else ''

	return variables


def write_cache_configuration(root: Path, caches: list[CacheDirectory], ops: DeviceOperations) -> list[Path]:
	"""
	Creates the cache directories below root and writes the profile
	and tmpfiles snippets that point the tools at them.
	"""
	if not caches:
		return []

	for cache in caches:
		ops.make_directory(relative_to_root(root, cache.path))

	profile = relative_to_root(root, PROFILE_PATH)
	tmpfiles = relative_to_root(root, TMPFILES_PATH)

	write_atomic(profile, render_profile(caches))
	write_atomic(tmpfiles, render_tmpfiles(caches))

	info(f'Configured {len(caches)} cache director{"y" if len(caches) == 1 else "ies"}')
	return [profile, tmpfiles]
