"""Local command execution.

Components never call ``subprocess`` directly; they go through a
``CommandRunner`` so dry runs and tests can intercept every host action.
"""
import logging
import os
import shutil
import subprocess
from pathlib import Path
from typing import Dict, List, Optional, Union

from ..errors import CommandError

logger = logging.getLogger("kubeboot.runner")


class CommandRunner:
    """Runs commands and writes files on the local host."""

    def __init__(self, dry_run: bool = False, timeout: Optional[float] = None):
        """Initialize the runner.

        Args:
            dry_run: If True, only log mutating actions without executing them
            timeout: Default per-command timeout in seconds (None waits forever)
        """
        self.dry_run = dry_run
        self.timeout = timeout

    def run(
        self,
        cmd: List[str],
        *,
        check: bool = True,
        input: Optional[Union[str, bytes]] = None,
        env: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
        mutating: bool = True,
    ) -> subprocess.CompletedProcess:
        """Run a command and capture its output.

        Args:
            cmd: Command argv
            check: Raise CommandError on a non-zero exit code
            input: Data fed to stdin
            env: Extra environment variables
            timeout: Command timeout (falls back to the runner default)
            mutating: False for read-only probes, which still run in dry-run mode

        Returns:
            The completed process

        Raises:
            CommandError: If check is True and the command fails or is missing
        """
        cmd_str = ' '.join(cmd)
        if self.dry_run and mutating:
            logger.info(f"[DRY RUN] Would execute: {cmd_str}")
            return subprocess.CompletedProcess(cmd, 0, stdout="", stderr="")

        logger.debug(f"💻 Running: {cmd_str}")
        text = not isinstance(input, bytes)
        try:
            result = subprocess.run(
                cmd,
                input=input,
                capture_output=True,
                text=text,
                env=self._env(env),
                timeout=timeout if timeout is not None else self.timeout,
            )
        except FileNotFoundError as e:
            if check:
                raise CommandError(f"Command not found: {cmd[0]}", returncode=127) from e
            return subprocess.CompletedProcess(cmd, 127, stdout="", stderr=str(e))
        except subprocess.TimeoutExpired as e:
            raise CommandError(f"Command timed out after {e.timeout}s: {cmd_str}", returncode=124) from e

        if check and result.returncode != 0:
            output = result.stderr or result.stdout
            if isinstance(output, bytes):
                output = output.decode(errors='replace')
            raise CommandError(
                f"Command failed: {cmd_str} (exit code: {result.returncode})",
                returncode=result.returncode,
                output=(output or "").strip(),
            )
        return result

    def succeeds(self, cmd: List[str], env: Optional[Dict[str, str]] = None) -> bool:
        """Run a read-only probe and report whether it exited zero."""
        return self.run(cmd, check=False, env=env, mutating=False).returncode == 0

    def output(self, cmd: List[str], env: Optional[Dict[str, str]] = None) -> str:
        """Run a read-only probe and return its stripped stdout ('' on failure)."""
        result = self.run(cmd, check=False, env=env, mutating=False)
        if result.returncode != 0:
            return ""
        return (result.stdout or "").strip()

    def stream(self, cmd: List[str], *, check: bool = True, env: Optional[Dict[str, str]] = None) -> int:
        """Run a long command, forwarding each output line to the log.

        Returns:
            The exit code

        Raises:
            CommandError: If check is True and the command fails
        """
        cmd_str = ' '.join(cmd)
        if self.dry_run:
            logger.info(f"[DRY RUN] Would execute: {cmd_str}")
            return 0

        logger.debug(f"💻 Streaming: {cmd_str}")
        try:
            process = subprocess.Popen(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                env=self._env(env),
            )
        except FileNotFoundError as e:
            raise CommandError(f"Command not found: {cmd[0]}", returncode=127) from e

        tail: List[str] = []
        try:
            with process.stdout:
                for line in process.stdout:
                    line = line.rstrip()
                    logger.info(f"  | {line}")
                    tail = (tail + [line])[-20:]
        except BaseException:
            # interrupted mid-stream; do not leave the child running
            process.kill()
            process.wait()
            raise
        returncode = process.wait()

        if check and returncode != 0:
            raise CommandError(
                f"Command failed: {cmd[0]} {cmd[1] if len(cmd) > 1 else ''} (exit code: {returncode})".strip(),
                returncode=returncode,
                output='\n'.join(tail),
            )
        return returncode

    def which(self, name: str) -> Optional[str]:
        return shutil.which(name)

    def is_root(self) -> bool:
        return os.geteuid() == 0

    def service_active(self, name: str) -> bool:
        return self.succeeds(['systemctl', 'is-active', '--quiet', name])

    def service_enabled(self, name: str) -> bool:
        return self.succeeds(['systemctl', 'is-enabled', '--quiet', name])

    def write_file(self, path: Union[str, Path], content: Union[str, bytes], mode: int = 0o644) -> None:
        """Write a host file atomically (temp file + rename)."""
        path = Path(path)
        if self.dry_run:
            logger.info(f"[DRY RUN] Would write {path}")
            return
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(f".{path.name}.tmp")
        if isinstance(content, bytes):
            tmp.write_bytes(content)
        else:
            tmp.write_text(content, encoding='utf-8')
        os.chmod(tmp, mode)
        os.replace(tmp, path)
        logger.debug(f"Wrote {path}")

    @staticmethod
    def _env(extra: Optional[Dict[str, str]]) -> Optional[Dict[str, str]]:
        if not extra:
            return None
        env = os.environ.copy()
        env.update(extra)
        return env
