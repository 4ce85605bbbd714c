from __future__ import annotations

import os
import shlex
import stat
import subprocess
import time
from pathlib import Path
from shutil import which
from typing import override

from .exceptions import RequirementError, SysCallError
from .output import debug, logger


def locate_binary(name: str) -> str:
	if path := which(name):
		return path
	raise RequirementError(f'Binary {name} does not exist.')


class SysCommand:
	"""
	Runs an external command to completion and keeps its combined output.
	A non-zero exit code raises SysCallError carrying the output.
	"""

	def __init__(
		self,
		cmd: str | list[str],
		input_data: bytes | None = None,
		environment_vars: dict[str, str] | None = None,
		working_directory: str | None = None,
	):
		if isinstance(cmd, str):
			cmd = shlex.split(cmd)

		if cmd and not cmd[0].startswith(('/', './')):
			cmd[0] = locate_binary(cmd[0])

		self.cmd = cmd
		self.input_data = input_data
		# define the standard locale for command outputs
		self.environment_vars = {'LC_ALL': 'C'}
		if environment_vars:
			self.environment_vars.update(environment_vars)

		self.working_directory = working_directory
		self._trace_log = b''
		self._exit_code: int | None = None

		self._execute()

	def _execute(self) -> None:
		_log_cmd(self.cmd)
		debug(f'Executing: {shlex.join(self.cmd)}')

		proc = subprocess.run(
			self.cmd,
			input=self.input_data,
			stdout=subprocess.PIPE,
			stderr=subprocess.STDOUT,
			env={**os.environ, **self.environment_vars},
			cwd=self.working_directory,
		)

		self._trace_log = proc.stdout or b''
		self._exit_code = proc.returncode

		if self._exit_code != 0:
			raise SysCallError(
				f'{shlex.join(self.cmd)} exited with abnormal exit code [{self._exit_code}]: {self.decode()[-500:]}',
				self._exit_code,
				worker_log=self._trace_log,
				cmd=self.cmd,
			)

	@override
	def __repr__(self) -> str:
		return self.decode('UTF-8', errors='backslashreplace') or ''

	@override
	def __str__(self) -> str:
		return self.decode()

	def decode(self, encoding: str = 'utf-8', errors: str = 'backslashreplace', strip: bool = True) -> str:
		val = self._trace_log.decode(encoding, errors=errors)

		if strip:
			return val.strip()
		return val

	def output(self, remove_cr: bool = True) -> bytes:
		if remove_cr:
			return self._trace_log.replace(b'\r\n', b'\n')

		return self._trace_log

	@property
	def exit_code(self) -> int | None:
		return self._exit_code

	@property
	def trace_log(self) -> bytes:
		return self._trace_log


def _log_cmd(cmd: list[str]) -> None:
	history_logfile = logger.directory / 'cmd_history.txt'

	change_perm = False
	if history_logfile.exists() is False:
		change_perm = True

	try:
		with history_logfile.open('a') as cmd_log:
			cmd_log.write(f'{time.time()} {cmd}\n')

		if change_perm:
			history_logfile.chmod(stat.S_IRUSR | stat.S_IWUSR | stat.S_IRGRP)
	except (PermissionError, FileNotFoundError):
		# If history_logfile does not exist, ignore the error
		pass


def run(
	cmd: list[str],
	input_data: bytes | None = None,
) -> subprocess.CompletedProcess[bytes]:
	"""
	Runs a command where secrets are passed on stdin, the input is
	never written to the command history.
	"""
	_log_cmd(cmd)
	debug(f'Running: {shlex.join(cmd)}')

	return subprocess.run(
		cmd,
		input=input_data,
		stdout=subprocess.PIPE,
		stderr=subprocess.STDOUT,
		check=True,
	)


def read_secret_file(path: Path) -> str:
	return path.read_text().rstrip('\n')
