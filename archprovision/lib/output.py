import logging
import os
import sys
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Protocol


class TableRow(Protocol):
	def table_data(self) -> dict[str, Any]: ...


class FormattedOutput:
	@classmethod
	def as_table(cls, rows: list[TableRow], columns: list[str] | None = None) -> str:
		"""
		Formats objects exposing table_data() as a table, columns
		restricts and orders the columns that are shown.
		"""
		raw_data = [row.table_data() for row in rows]

		column_width: dict[str, int] = {}
		for record in raw_data:
			for key, value in record.items():
				if columns is None or key in columns:
					column_width[key] = max(column_width.get(key, 0), len(str(value)), len(key))

		keys = columns if columns is not None else list(column_width)

		header = ' | '.join(key.replace('_', ' ').ljust(column_width.get(key, len(key))) for key in keys)
		output = header + '\n' + '-' * len(header) + '\n'

		for record in raw_data:
			cells = []
			for key in keys:
				width = column_width.get(key, len(key))
				value = record.get(key, '')

				if isinstance(value, int | float) and not isinstance(value, bool):
					cells.append(str(value).rjust(width))
				else:
					cells.append(str(value).ljust(width))

			output += ' | '.join(cells) + '\n'

		return output


class Journald:
	_adapter: logging.Logger | None = None
	_unavailable = False

	@classmethod
	def _logger(cls) -> logging.Logger | None:
		if cls._adapter is None and not cls._unavailable:
			try:
				import systemd.journal  # type: ignore[import-not-found]
			except ModuleNotFoundError:
				cls._unavailable = True
				return None

			handler = systemd.journal.JournalHandler()
			handler.setFormatter(logging.Formatter('[%(levelname)s]: %(message)s'))

			adapter = logging.getLogger('archprovision')
			adapter.addHandler(handler)
			adapter.setLevel(logging.DEBUG)
			cls._adapter = adapter

		return cls._adapter

	@classmethod
	def log(cls, message: str, level: int = logging.DEBUG) -> None:
		if adapter := cls._logger():
			adapter.log(level, message)


class Logger:
	def __init__(self, path: Path | None = None) -> None:
		if path is None:
			path = Path(os.environ.get('ARCHPROVISION_LOG_DIR', '/var/log/archprovision'))

		self._path = path
		self.verbose = False

	@property
	def path(self) -> Path:
		return self._path / 'provision.log'

	@property
	def directory(self) -> Path:
		return self._path

	def set_directory(self, path: Path) -> None:
		self._path = path

	def _check_permissions(self) -> None:
		log_file = self.path

		try:
			self._path.mkdir(exist_ok=True, parents=True)
			log_file.touch(exist_ok=True)
		except PermissionError:
			# Fallback to creating the log file in the current folder
			self._path = Path('./').absolute()

			warn(f'Not enough permission to place log file at {log_file}, creating it in {self.path} instead')

	def log(self, level: int, content: str) -> None:
		self._check_permissions()

		with self.path.open('a') as f:
			ts = datetime.now(tz=UTC).strftime('%Y-%m-%d %H:%M:%S')
			f.write(f'[{ts}] - {logging.getLevelName(level)} - {content}\n')


logger = Logger()

_COLORS = {
	'red': '31',
	'green': '32',
	'yellow': '33',
	'white': '37',
	'gray': '38;5;246',
}


def _supports_color() -> bool:
	# isatty is not always implemented
	return hasattr(sys.stdout, 'isatty') and sys.stdout.isatty()


def _stylize_output(text: str, fg: str) -> str:
	return f'\033[{_COLORS[fg]}m{text}\033[0m'


def info(*msgs: str, fg: str = 'white') -> None:
	log(*msgs, level=logging.INFO, fg=fg)


def debug(*msgs: str, fg: str = 'white') -> None:
	log(*msgs, level=logging.DEBUG, fg=fg)


def error(*msgs: str, fg: str = 'red') -> None:
	log(*msgs, level=logging.ERROR, fg=fg)


def warn(*msgs: str, fg: str = 'yellow') -> None:
	log(*msgs, level=logging.WARNING, fg=fg)


def log(*msgs: str, level: int = logging.INFO, fg: str = 'white') -> None:
	text = ' '.join([str(x) for x in msgs])

	logger.log(level, text)
	Journald.log(text, level=level)

	if level != logging.DEBUG or logger.verbose:
		if _supports_color():
			text = _stylize_output(text, fg)
		print(text, flush=True)
