from __future__ import annotations

import os
import shutil
import tempfile
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from .output import debug, info

FSTAB_HEADER = '# Static information about the filesystems.\n# Generated by archprovision, see fstab(5) for details.\n'
CRYPTTAB_HEADER = '# Configuration for encrypted block devices.\n# Generated by archprovision, see crypttab(5) for details.\n'


def _unescape(field: str) -> str:
	return field.replace('\\040', ' ').replace('\\011', '\t')


def _escape(field: str) -> str:
	return field.replace(' ', '\\040').replace('\t', '\\011')


@dataclass(frozen=True)
class FstabEntry:
	source: str
	mountpoint: str
	fstype: str
	options: tuple[str, ...] = ('defaults',)
	dump: int = 0
	passno: int = 0

	@classmethod
	def parse_line(cls, line: str) -> FstabEntry:
		fields = line.split()

		if len(fields) < 4 or len(fields) > 6:
			raise ValueError(f'Malformed fstab line: {line!r}')

		dump = int(fields[4]) if len(fields) > 4 else 0
		passno = int(fields[5]) if len(fields) > 5 else 0

		return FstabEntry(
			source=_unescape(fields[0]),
			mountpoint=_unescape(fields[1]),
			fstype=fields[2],
			options=tuple(fields[3].split(',')),
			dump=dump,
			passno=passno,
		)

	def render(self) -> str:
		return '\t'.join(
			[
				_escape(self.source),
				_escape(self.mountpoint),
				self.fstype,
				','.join(self.options),
				str(self.dump),
				str(self.passno),
			]
		)

	@property
	def uuid(self) -> str | None:
		if self.source.startswith('UUID='):
			return self.source.removeprefix('UUID=')
		return None

	@property
	def is_swap(self) -> bool:
		return self.fstype == 'swap'

	@property
	def subvolume(self) -> str | None:
		for option in self.options:
			if option.startswith('subvol='):
				return option.removeprefix('subvol=').lstrip('/')
		return None

	def table_data(self) -> dict[str, str | int]:
		return {
			'source': self.source,
			'mountpoint': self.mountpoint,
			'fstype': self.fstype,
			'options': ','.join(self.options),
			'dump': self.dump,
			'pass': self.passno,
		}


@dataclass(frozen=True)
class CrypttabEntry:
	name: str
	source: str
	keyfile: str = 'none'
	options: tuple[str, ...] = ('luks',)

	def render(self) -> str:
		return f'{self.name}\t{self.source}\t{self.keyfile}\t{",".join(self.options)}'


def parse_fstab(text: str) -> list[FstabEntry]:
	entries = []

	for line in text.splitlines():
		line = line.strip()

		if not line or line.startswith('#'):
			continue

		entries.append(FstabEntry.parse_line(line))

	return entries


def read_fstab(path: Path) -> list[FstabEntry]:
	return parse_fstab(path.read_text())


def mount_order(entries: list[FstabEntry]) -> list[FstabEntry]:
	"""
	Parents before children, swap at the end. Entries at the same
	depth keep their original order.
	"""

	def _key(entry: FstabEntry) -> tuple[int, int]:
		if entry.is_swap or not entry.mountpoint.startswith('/'):
			return (1, 0)
		return (0, len(Path(entry.mountpoint).parts))

	return sorted(entries, key=_key)


def render_fstab(entries: list[FstabEntry]) -> str:
	lines = [FSTAB_HEADER]

	for entry in mount_order(entries):
		lines.append(entry.render() + '\n')

	return ''.join(lines)


def render_crypttab(entries: list[CrypttabEntry]) -> str:
	return CRYPTTAB_HEADER + ''.join(entry.render() + '\n' for entry in entries)


def _backup(path: Path) -> Path:
	stamp = datetime.now(tz=UTC).strftime('%Y%m%d-%H%M%S')
	backup = path.with_name(f'{path.name}.backup.{stamp}')

	counter = 1
	while backup.exists():
		backup = path.with_name(f'{path.name}.backup.{stamp}.{counter}')
		counter += 1

	shutil.copy2(path, backup)
	info(f'Backed up {path} to {backup}')
	return backup


def write_atomic(path: Path, content: str, mode: int = 0o644, backup: bool = True) -> Path | None:
	"""
	Writes the file next to its destination and replaces the original
	in a single rename, so a reader never sees a partial file.
	Returns the backup of the previous content if one was made.
	"""
	path.parent.mkdir(parents=True, exist_ok=True)

	backup_path = None
	if backup and path.exists():
		backup_path = _backup(path)

	fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f'.{path.name}.')
	tmp_path = Path(tmp_name)

	try:
		with os.fdopen(fd, 'w') as tmp_file:
			tmp_file.write(content)
			tmp_file.flush()
			os.fsync(tmp_file.fileno())

		tmp_path.chmod(mode)
		os.replace(tmp_path, path)
	except BaseException:
		tmp_path.unlink(missing_ok=True)
		raise

	debug(f'Wrote {path}')
	return backup_path


def write_fstab(path: Path, entries: list[FstabEntry]) -> Path | None:
	return write_atomic(path, render_fstab(entries))


def write_crypttab(path: Path, entries: list[CrypttabEntry]) -> Path | None:
	return write_atomic(path, render_crypttab(entries), mode=0o600)


def register_fstab_entry(path: Path, entry: FstabEntry) -> bool:
	"""
	Makes entry the only line for its mount point. Lines mounting
	something else there are dropped, comments and all other lines are
	kept as they are. Returns False if entry was already registered.
	"""
	lines = path.read_text().splitlines() if path.exists() else []
	kept: list[str] = []
	stale: list[FstabEntry] = []

	for line in lines:
		stripped = line.strip()

		if stripped and not stripped.startswith('#'):
			existing = FstabEntry.parse_line(stripped)

			if existing.mountpoint == entry.mountpoint:
				if existing.source == entry.source and existing.subvolume == entry.subvolume:
					debug(f'{entry.mountpoint} is already registered in {path}')
					return False

				stale.append(existing)
				continue

		kept.append(line)

	for existing in stale:
		info(f'Replacing stale {existing.mountpoint} entry in {path}: {existing.render()}')

	kept.append(entry.render())
	write_atomic(path, '\n'.join(kept) + '\n')
	return True
