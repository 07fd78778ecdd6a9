"""
Host-native package script execution.

Packages may carry install and uninstall scripts. Which file is used, and
with which interpreter, depends on the host:

    Windows:  install.bat (cmd.exe), then install.ps1 (PowerShell)
    others:   install.sh (bash)

HostCapabilities captures that choice once; ScriptRunner executes the
chosen script as an asyncio subprocess and streams stdout and stderr line
by line to a callback while collecting the full log.

Example:
    host = HostCapabilities.detect()
    script = host.find_script(package_dir, 'install')
    if script:
        result = await ScriptRunner(host).run(script, [install_root], env, package_dir)
"""

import asyncio
import logging
import os
import platform
import signal
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence


logger = logging.getLogger(__name__)


STDERR_PREFIX = '[stderr] '

READ_CHUNK_SIZE = 64 * 1024
MAX_LINE_BYTES = 1024 * 1024

LineCallback = Callable[[str], None]


@dataclass
class HostCapabilities:
    """
    Describes how this host runs package scripts.

    Attributes:
        system: platform.system() value ('Linux', 'Windows', 'Darwin', ...)
        script_names: Ordered candidate filenames per script kind
        interpreters: Command prefix per script file extension
    """
    system: str
    script_names: Dict[str, List[str]] = field(default_factory=dict)
    interpreters: Dict[str, List[str]] = field(default_factory=dict)

    @classmethod
    def windows(cls) -> 'HostCapabilities':
        return cls(
            system='Windows',
            script_names={
                'install': ['install.bat', 'install.ps1'],
                'uninstall': ['uninstall.bat', 'uninstall.ps1'],
            },
            interpreters={
                '.bat': ['cmd.exe', '/c'],
                '.ps1': ['powershell.exe', '-NoProfile', '-ExecutionPolicy', 'Bypass', '-File'],
            },
        )

    @classmethod
    def posix(cls, system: str = 'Linux') -> 'HostCapabilities':
        return cls(
            system=system,
            script_names={
                'install': ['install.sh'],
                'uninstall': ['uninstall.sh'],
            },
            interpreters={
                '.sh': ['bash'],
            },
        )

    @classmethod
    def detect(cls) -> 'HostCapabilities':
        """Build the descriptor for the running host."""
        system = platform.system()
        if system == 'Windows':
            return cls.windows()
        return cls.posix(system or 'Linux')

    @property
    def is_windows(self) -> bool:
        return self.system == 'Windows'

    def find_script(self, package_dir: str, kind: str = 'install') -> Optional[str]:
        """
        Locate the first candidate script present in a package directory.

        Args:
            package_dir: Extracted package directory
            kind: 'install' or 'uninstall'

        Returns:
            Absolute script path, or None if the package has no such script
        """
        for name in self.script_names.get(kind, []):
            candidate = os.path.join(package_dir, name)
            if os.path.isfile(candidate):
                return os.path.abspath(candidate)
        return None

    def command_for(self, script_path: str, args: Sequence[str] = ()) -> List[str]:
        """
        Build the argv for running a script on this host.

        Raises:
            ValueError: If the script type is not runnable here
        """
        ext = os.path.splitext(script_path)[1].lower()
        prefix = self.interpreters.get(ext)
        if prefix is None:
            raise ValueError(f"No interpreter for {ext or script_path} on {self.system}")
        return [*prefix, script_path, *args]


@dataclass
class ScriptResult:
    """Outcome of one script run."""
    exit_code: int
    lines: List[str] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0

    @property
    def log_output(self) -> str:
        return '\n'.join(self.lines)


class ScriptRunner:
    """Runs package scripts as subprocesses and streams their output."""

    def __init__(self, host: Optional[HostCapabilities] = None):
        self.host = host or HostCapabilities.detect()

    def _emit(
        self,
        raw: bytes,
        prefix: str,
        lines: List[str],
        on_line: Optional[LineCallback],
    ) -> None:
        line = prefix + raw.decode('utf-8', errors='replace').rstrip('\r')
        lines.append(line)
        logger.info(f"[script] {line}")
        if on_line is not None:
            try:
                on_line(line)
            except Exception as e:
                logger.error(f"Script output callback failed: {e}")

    async def _pump(
        self,
        stream: asyncio.StreamReader,
        prefix: str,
        lines: List[str],
        on_line: Optional[LineCallback],
    ) -> None:
        # Lines longer than MAX_LINE_BYTES are emitted in pieces
        buffer = b''
        while True:
            chunk = await stream.read(READ_CHUNK_SIZE)
            if not chunk:
                break
            buffer += chunk
            *complete, buffer = buffer.split(b'\n')
            for raw in complete:
                self._emit(raw, prefix, lines, on_line)
            while len(buffer) >= MAX_LINE_BYTES:
                self._emit(buffer[:MAX_LINE_BYTES], prefix, lines, on_line)
                buffer = buffer[MAX_LINE_BYTES:]
        if buffer:
            self._emit(buffer, prefix, lines, on_line)

    async def _kill(self, process: asyncio.subprocess.Process) -> None:
        """Kill the script and anything it started, then reap it."""
        if process.returncode is None:
            try:
                if self.host.is_windows:
                    process.kill()
                else:
                    os.killpg(process.pid, signal.SIGKILL)
            except ProcessLookupError:
                pass
        await process.wait()

    async def run(
        self,
        script_path: str,
        args: Sequence[str] = (),
        env: Optional[Dict[str, str]] = None,
        cwd: Optional[str] = None,
        on_line: Optional[LineCallback] = None,
    ) -> ScriptResult:
        """
        Run a script to completion.

        stdout and stderr are read concurrently; stderr lines are prefixed
        with '[stderr] '. Lines from both streams end up in one log buffer
        in the order they were read.

        Args:
            script_path: Script to run
            args: Positional arguments after the script path
            env: Extra environment variables (merged over os.environ)
            cwd: Working directory (defaults to the script's directory)
            on_line: Called for every output line

        Returns:
            ScriptResult with the exit code and all output lines
        """
        command = self.host.command_for(script_path, args)
        process_env = dict(os.environ)
        if env:
            process_env.update(env)

        logger.info(f"Running script: {' '.join(command)}")

        process = await asyncio.create_subprocess_exec(
            *command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=process_env,
            cwd=cwd or os.path.dirname(script_path),
            start_new_session=not self.host.is_windows,
        )

        lines: List[str] = []
        pumps = [
            asyncio.ensure_future(self._pump(process.stdout, '', lines, on_line)),
            asyncio.ensure_future(self._pump(process.stderr, STDERR_PREFIX, lines, on_line)),
        ]
        try:
            await asyncio.gather(*pumps)
            exit_code = await process.wait()
        except BaseException:
            # The script must not outlive a failed or cancelled run
            for pump in pumps:
                pump.cancel()
            await asyncio.gather(*pumps, return_exceptions=True)
            await self._kill(process)
            logger.warning(f"Script {os.path.basename(script_path)} killed after aborted run")
            raise

        logger.info(f"Script {os.path.basename(script_path)} exited with code {exit_code}")
        return ScriptResult(exit_code=exit_code, lines=lines)
