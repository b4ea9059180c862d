"""
Safe execution of the external USB/IP tools.

Only allow-listed programs are run, always as an argument vector and never
through a shell, so a busid can never be interpreted as shell syntax.
"""

from __future__ import annotations
import logging
import os
import shutil
import subprocess
import threading
from dataclasses import dataclass
from typing import BinaryIO, Iterable, Optional, Sequence

from .exceptions import ExecutionError, ValidationError
from .models import BUSID_MAX_LENGTH, BUSID_PATTERN, sanitize_info

logger = logging.getLogger(__name__)

USBIP = "usbip"
LSUSB = "lsusb"

# Inventory, bind and unbind all go through usbip; lsusb resolves vendor names
ALLOWED_PROGRAMS = frozenset({USBIP, LSUSB})

OUTPUT_LIMIT = 8192
COMMAND_TIMEOUT = 10.0
ERROR_MESSAGE_LIMIT = 200
READ_CHUNK_SIZE = 4096
READER_JOIN_TIMEOUT = 1.0

# usbip usually lives in sbin, which is not always on a service's PATH
EXTRA_SEARCH_DIRS = ["/usr/local/sbin", "/usr/sbin", "/sbin"]


def validate_busid(busid: object) -> str:
    """Return busid unchanged if it is safe to hand to usbip.

    Raises:
        ValidationError: if busid is not a string of 1-63 characters drawn
            from digits, dots and dashes, starting with a digit.
    """
    if not isinstance(busid, str):
        raise ValidationError("busid must be a string")
    if not busid:
        raise ValidationError("busid is empty")
    if len(busid) > BUSID_MAX_LENGTH:
        raise ValidationError("busid is too long")
    if not BUSID_PATTERN.fullmatch(busid):
        raise ValidationError("busid contains invalid characters")
    return busid


def summarize_failure(output: str) -> str:
    """Reduce command output to a short printable error message."""
    for line in output.splitlines():
        message = sanitize_info(line)
        if message:
            return message[:ERROR_MESSAGE_LIMIT]
    return "Unknown error"


def _read_limited(stream: BinaryIO, limit: int, chunks: list[bytes]) -> None:
    """Keep the first limit bytes of stream and discard the rest."""
    kept = 0
    for block in iter(lambda: stream.read(READ_CHUNK_SIZE), b""):
        if kept < limit:
            block = block[: limit - kept]
            chunks.append(block)
            kept += len(block)


@dataclass
class CommandResult:
    """Exit status and captured output of a finished command."""
    returncode: int
    output: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class CommandExecutor:
    """Runs allow-listed programs and captures bounded output."""

    def __init__(
        self,
        allowed_programs: Iterable[str] = ALLOWED_PROGRAMS,
        output_limit: int = OUTPUT_LIMIT,
        timeout: float = COMMAND_TIMEOUT,
    ):
        self.allowed_programs = frozenset(allowed_programs)
        self.output_limit = output_limit
        self.timeout = timeout

    def resolve(self, program: str) -> Optional[str]:
        """Find the executable for an allowed program, or None."""
        search_path = os.pathsep.join(
            [os.environ.get("PATH", os.defpath), *EXTRA_SEARCH_DIRS]
        )
        return shutil.which(program, path=search_path)

    def execute(self, program: str, args: Sequence[str] = ()) -> CommandResult:
        """Run program with args and wait for it to exit.

        A non-zero exit status is reported in the result, not raised.

        Raises:
            ExecutionError: if the program is not allowed, cannot be found,
                cannot be started or does not finish in time.
        """
        if program not in self.allowed_programs:
            raise ExecutionError(f"command not allowed: {program}")

        executable = self.resolve(program)
        if executable is None:
            raise ExecutionError(f"command not found: {program}")

        argv = [executable, *args]
        env = dict(os.environ, LC_ALL="C")
        logger.debug(f"Running {argv}")

        try:
            process = subprocess.Popen(
                argv,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                env=env,
                shell=False,
            )
        except OSError as e:
            raise ExecutionError(f"failed to start {program}: {e.strerror or e}") from e

        chunks: list[bytes] = []
        with process:
            # The pipe is drained to EOF so the child never blocks on a full pipe
            reader = threading.Thread(
                target=_read_limited,
                args=(process.stdout, self.output_limit, chunks),
                daemon=True,
            )
            reader.start()
            try:
                returncode = process.wait(timeout=self.timeout)
            except subprocess.TimeoutExpired as e:
                process.kill()
                process.wait()
                reader.join(READER_JOIN_TIMEOUT)
                raise ExecutionError(f"{program} timed out after {self.timeout:g}s") from e
            reader.join(READER_JOIN_TIMEOUT)

        output = b"".join(chunks).decode("utf-8", errors="replace")
        if returncode != 0:
            logger.debug(f"{program} exited with status {returncode}")
        return CommandResult(returncode=returncode, output=output)


# Global executor instance
_executor: Optional[CommandExecutor] = None


def get_executor() -> CommandExecutor:
    """Get or create the global command executor."""
    global _executor
    if _executor is None:
        _executor = CommandExecutor()
    return _executor
