"""Tests for command execution and busid validation."""

import io
import sys

import pytest

from usbctl.exceptions import ExecutionError, ValidationError
from usbctl.executor import CommandExecutor, _read_limited, summarize_failure, validate_busid


@pytest.fixture
def python_executor():
    return CommandExecutor(allowed_programs={sys.executable}, output_limit=64, timeout=10)


@pytest.mark.parametrize("busid", ["1-1", "1-1.2", "3-10.4.1", "1" * 63])
def test_validate_busid_accepts(busid):
    assert validate_busid(busid) == busid


@pytest.mark.parametrize(
    "busid",
    ["", "; rm -rf /", "1-1 ", "1-1;reboot", "$(id)", "1-1\n", "usb1", "-1", "--help", "1" * 64, None, 11],
)
def test_validate_busid_rejects(busid):
    with pytest.raises(ValidationError):
        validate_busid(busid)


def test_program_not_allowed():
    executor = CommandExecutor()
    with pytest.raises(ExecutionError, match="not allowed"):
        executor.execute("sh", ["-c", "true"])


def test_missing_program():
    executor = CommandExecutor(allowed_programs={"usbctl-no-such-tool"})
    with pytest.raises(ExecutionError, match="not found"):
        executor.execute("usbctl-no-such-tool")


def test_arguments_are_not_shell_interpreted(python_executor):
    result = python_executor.execute(
        sys.executable, ["-c", "import sys; print(sys.argv[1])", "; echo pwned"]
    )
    assert result.ok
    assert result.output.strip() == "; echo pwned"


def test_nonzero_exit_is_reported(python_executor):
    result = python_executor.execute(sys.executable, ["-c", "import sys; sys.exit(3)"])
    assert result.returncode == 3
    assert not result.ok


def test_stderr_is_merged(python_executor):
    result = python_executor.execute(
        sys.executable, ["-c", "import sys; sys.stderr.write('oops')"]
    )
    assert "oops" in result.output


def test_output_is_truncated(python_executor):
    result = python_executor.execute(sys.executable, ["-c", "print('x' * 10000)"])
    assert result.ok
    assert result.output == "x" * 64


def test_timeout_raises():
    executor = CommandExecutor(allowed_programs={sys.executable}, timeout=0.5)
    with pytest.raises(ExecutionError, match="timed out"):
        executor.execute(sys.executable, ["-c", "import time; time.sleep(5)"])


def test_summarize_failure():
    assert summarize_failure("\n  usbip: error: already bound\nmore") == "usbip: error: already bound"
    assert summarize_failure("") == "Unknown error"
    assert summarize_failure("\x1b[31mred\x07") == "[31mred"
    assert len(summarize_failure("e" * 1000)) == 200


def test_read_limited_keeps_prefix_and_drains():
    stream = io.BytesIO(b"a" * 10 + b"b" * 100000)
    chunks = []
    _read_limited(stream, 12, chunks)
    assert b"".join(chunks) == b"a" * 10 + b"bb"
    assert sum(len(c) for c in chunks) == 12
    assert stream.tell() == 100010


def test_large_output_does_not_block_child(python_executor):
    # Far more than a pipe buffer; the child would hang if the pipe was not drained
    result = python_executor.execute(
        sys.executable, ["-c", "import sys; sys.stdout.write('y' * 2000000); sys.exit(4)"]
    )
    assert result.returncode == 4
    assert result.output == "y" * 64
