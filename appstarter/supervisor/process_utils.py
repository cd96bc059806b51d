import os
import sys
import shlex
import logging
import threading
import subprocess
from typing import Any, Callable, Dict, List, Optional, Union

from appstarter.models import CommandConfig
from appstarter.log.setup import process_logger

LineHandler = Callable[[str, bool], None]


#* --- Process Creation ---
def get_popen_creation_flags(command: CommandConfig) -> Dict[str, Any]:
    """
    Returns platform-specific keyword arguments for subprocess.Popen.

    On Windows the process may be started without a console window. Elsewhere
    the process is placed in its own session so its whole group can be signalled.

    :param command: The command being launched.
    :return dict: Keyword arguments for Popen.
    """
    if sys.platform == "win32":
        flags = subprocess.CREATE_NEW_PROCESS_GROUP
        if command.hide_window:
            flags |= subprocess.CREATE_NO_WINDOW
        return {"creationflags": flags}
    return {"start_new_session": True}


def build_command_line(command: CommandConfig) -> Union[List[str], str]:
    """
    Combines the executable and its argument string.

    POSIX gets an argv list split with shell quoting rules; Windows gets a
    single command line, which is what CreateProcess expects anyway.
    """
    if not command.command:
        raise ValueError("No executable configured")
    if sys.platform == "win32":
        executable = subprocess.list2cmdline([command.command])
        return f"{executable} {command.arguments}".strip()
    return [command.command, *shlex.split(command.arguments or "")]


def build_environment(command: CommandConfig) -> Dict[str, str]:
    """Returns the parent environment with the command's overrides applied."""
    env = dict(os.environ)
    env.update({str(k): str(v) for k, v in command.environment_variables.items()})
    return env


def resolve_working_directory(command: CommandConfig) -> str:
    return command.working_directory or os.getcwd()


#* --- Output Capture ---
def _read_pipe(pipe, command: CommandConfig, is_error: bool, line_handler: Optional[LineHandler] = None):
    """Target function for reader threads. Reads, logs and forwards lines from a subprocess pipe."""
    proc_log = process_logger(command)
    level = logging.ERROR if is_error else logging.INFO
    try:
        for line_bytes in iter(pipe.readline, b""):
            line = line_bytes.decode("utf-8", errors="replace").rstrip("\r\n")
            if not line:
                continue
            proc_log.log(level, line)
            if line_handler:
                line_handler(line, is_error)
    except Exception as e:
        proc_log.debug(f"Pipe reader for {command.name} stream exited: {e}")
    finally:
        pipe.close()


def log_process_output(
    process: subprocess.Popen,
    command: CommandConfig,
    line_handler: Optional[LineHandler] = None
) -> List[threading.Thread]:
    """
    Starts background threads to consume a process's stdout/stderr.

    Consuming both pipes keeps the child from blocking on a full pipe. Each
    line is logged on the command's process logger and passed to `line_handler`.

    :return: The started reader threads.
    """
    readers = []
    for pipe, is_error in ((process.stdout, False), (process.stderr, True)):
        if pipe is None:
            continue
        stream = "stderr" if is_error else "stdout"
        reader = threading.Thread(
            target=_read_pipe,
            args=(pipe, command, is_error, line_handler),
            daemon=True,
            name=f"{stream}-{command.name or command.id}",
        )
        reader.start()
        readers.append(reader)
    return readers


def spawn_process(command: CommandConfig) -> subprocess.Popen:
    """
    Spawns the command with redirected standard streams.

    :raises OSError: If the executable cannot be started.
    :raises ValueError: If the launch spec is incomplete or unparsable.
    """
    return subprocess.Popen(
        build_command_line(command),
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        stdin=subprocess.DEVNULL,
        cwd=resolve_working_directory(command),
        env=build_environment(command),
        **get_popen_creation_flags(command),
    )
